import subprocess
from pathlib import Path

import pytest

from apksurgeon import tools
from apksurgeon.config import Settings
from apksurgeon.errors import AssemblyError, DisassemblyError, SigningError
from apksurgeon.tools import ApkSigner, Baksmali, Smali, find_tool


@pytest.fixture
def settings(tmp_path):
    return Settings(bin_dir=tmp_path / "bin", api="34", jobs=2, timeout=30,
                    apksigner="/opt/bt/apksigner")


class Recorder:
    def __init__(self, returncode=0, stderr="", on_call=None):
        self.cmds = []
        self.returncode = returncode
        self.stderr = stderr
        self.on_call = on_call

    def __call__(self, cmd, timeout):
        self.cmds.append(list(cmd))
        if self.on_call:
            self.on_call(cmd)
        return subprocess.CompletedProcess(cmd, self.returncode, "", self.stderr)


def test_baksmali_command(settings, tmp_path, monkeypatch):
    rec = Recorder()
    monkeypatch.setattr(tools, "_run", rec)
    Baksmali(settings).disassemble(tmp_path / "classes.dex", tmp_path / "smali")
    assert rec.cmds == [[
        "java", "-jar", str(tmp_path / "bin" / "baksmali.jar"), "d", "-a", "34",
        "-j", "2", str(tmp_path / "classes.dex"), "-o", str(tmp_path / "smali")]]


def test_baksmali_failure(settings, tmp_path, monkeypatch):
    monkeypatch.setattr(tools, "_run", Recorder(returncode=1, stderr="Invalid dex magic"))
    with pytest.raises(DisassemblyError, match="Invalid dex magic"):
        Baksmali(settings).disassemble(tmp_path / "classes.dex", tmp_path / "smali")


def test_baksmali_missing_java(settings, tmp_path, monkeypatch):
    def boom(cmd, timeout):
        raise FileNotFoundError("java")
    monkeypatch.setattr(tools, "_run", boom)
    with pytest.raises(DisassemblyError, match="could not run"):
        Baksmali(settings).disassemble(tmp_path / "classes.dex", tmp_path / "smali")


def test_smali_command(settings, tmp_path, monkeypatch):
    out = tmp_path / "modified_classes.dex"
    rec = Recorder(on_call=lambda cmd: Path(cmd[-1]).write_bytes(b"dex\n035\x00"))
    monkeypatch.setattr(tools, "_run", rec)
    assert Smali(settings).assemble(tmp_path / "smali", out) == out
    assert rec.cmds[0][:6] == ["java", "-jar", str(tmp_path / "bin" / "smali.jar"), "a", "-a", "34"]
    assert rec.cmds[0][-3:] == [str(tmp_path / "smali"), "-o", str(out)]


def test_smali_no_output_is_error(settings, tmp_path, monkeypatch):
    monkeypatch.setattr(tools, "_run", Recorder())
    with pytest.raises(AssemblyError):
        Smali(settings).assemble(tmp_path / "smali", tmp_path / "out.dex")


def test_apksigner_command(settings, tmp_path, monkeypatch, material):
    seen = {}

    def on_call(cmd):
        seen["key"] = Path(cmd[cmd.index("--key") + 1])
        seen["key_existed"] = seen["key"].is_file()

    rec = Recorder(on_call=on_call)
    monkeypatch.setattr(tools, "_run", rec)
    out = ApkSigner(settings).sign(tmp_path / "unsigned.apk", tmp_path / "signed.apk",
                                   material + material, 21)

    cmd = rec.cmds[0]
    assert out == tmp_path / "signed.apk"
    assert cmd[:4] == ["/opt/bt/apksigner", "sign", "--min-sdk-version", "21"]
    assert cmd.count("--v1-signer-name") == 2
    assert cmd.count("--next-signer") == 1
    assert cmd[cmd.index("--v1-signer-name") + 1] == "CERT"
    assert cmd[-3:] == ["--out", str(tmp_path / "signed.apk"), str(tmp_path / "unsigned.apk")]
    assert seen["key_existed"]
    assert not seen["key"].exists()


def test_apksigner_failure(settings, tmp_path, monkeypatch, material):
    monkeypatch.setattr(tools, "_run", Recorder(returncode=2, stderr="Failed to load signer"))
    with pytest.raises(SigningError, match="Failed to load signer"):
        ApkSigner(settings).sign(tmp_path / "u.apk", tmp_path / "s.apk", material, 21)


def test_apksigner_requires_material(settings, tmp_path):
    with pytest.raises(SigningError):
        ApkSigner(settings).sign(tmp_path / "u.apk", tmp_path / "s.apk", [], 21)


def test_find_tool_prefers_newest_build_tools(tmp_path, monkeypatch):
    monkeypatch.setattr(tools.shutil, "which", lambda name: None)
    monkeypatch.delenv("ANDROID_SDK_ROOT", raising=False)
    sdk = tmp_path / "sdk"
    for ver in ("30.0.3", "34.0.0", "9.0.0"):
        p = sdk / "build-tools" / ver / "apksigner"
        p.parent.mkdir(parents=True)
        p.write_text("#!/bin/sh\n")
        p.chmod(0o755)
    monkeypatch.setenv("ANDROID_HOME", str(sdk))
    assert find_tool("apksigner") == str(sdk / "build-tools" / "34.0.0" / "apksigner")


def test_find_tool_bin_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(tools.shutil, "which", lambda name: None)
    monkeypatch.delenv("ANDROID_HOME", raising=False)
    monkeypatch.delenv("ANDROID_SDK_ROOT", raising=False)
    p = tmp_path / "apksigner"
    p.write_text("#!/bin/sh\n")
    p.chmod(0o755)
    assert find_tool("apksigner", tmp_path) == str(p)
    assert find_tool("zipalign", tmp_path) is None


def test_apksigner_key_write_failure(settings, tmp_path, monkeypatch, material):
    def read_only(entry, dest, index=0):
        raise PermissionError(13, "Permission denied", str(dest))
    rec = Recorder()
    monkeypatch.setattr(tools, "write_signer_files", read_only)
    monkeypatch.setattr(tools, "_run", rec)
    with pytest.raises(SigningError, match="cannot write key material for CERT"):
        ApkSigner(settings).sign(tmp_path / "u.apk", tmp_path / "s.apk", material, 21)
    assert rec.cmds == []
