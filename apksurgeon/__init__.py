"""
apksurgeon  ─  single-method smali surgery for APKs
════════════════════════════════════════════════════
  APK → classes*.dex (highest first) → baksmali → replace one method →
  smali → rebuilt, aligned APK → apksigner
"""

from .config import DEFAULT_PATCH, PatchSpec, Settings
from .errors import FailureCause, PatchError
from .pipeline import PatchPipeline, PipelineResult

__version__ = "1.0.0"

__all__ = [
    "DEFAULT_PATCH", "PatchSpec", "Settings",
    "FailureCause", "PatchError",
    "PatchPipeline", "PipelineResult",
]
