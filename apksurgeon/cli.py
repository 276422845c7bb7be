"""
apksurgeon: replace one smali method inside an APK and re-sign it.

Commands:
  patch   <apk> -o <out>   find the target method in classes*.dex, patch, rebuild, sign
  dexes   <apk>            list bytecode images in the order they are tried
  inspect <apk>            entry map: compression, data offset, alignment
  verify                   check java / baksmali / smali / apksigner

Signing material comes from --keystore (PKCS#12) or --key/--cert, falling
back to KEYSTORE / KEYSTORE_PASS / KEY_ALIAS from the environment or .env.
"""

import argparse
import sys
import zipfile
from pathlib import Path

from . import archive as archive_index
from . import rebuilder
from .config import DEFAULT_PATCH, PatchSpec, Settings
from .errors import ConfigError, PatchError
from .log import err, info, ok, setup_logging, warn
from .pipeline import PatchPipeline
from .selector import select_from_archive
from .signing import DEFAULT_SIGNER_NAME, load_pem, load_pkcs12
from .tools import ApkSigner, Baksmali, Smali, check_tools


def _material(args, settings: Settings):
    name = args.signer_name
    if args.key or args.cert:
        if not (args.key and args.cert):
            raise ConfigError("--key and --cert must be given together")
        return [load_pem(Path(args.key), Path(args.cert), args.key_pass, name)]
    keystore = args.keystore or settings.keystore
    if not keystore:
        raise ConfigError("no signing material: pass --keystore or --key/--cert (or set KEYSTORE)")
    password = args.ks_pass if args.ks_pass is not None else settings.keystore_pass
    alias = args.alias or settings.key_alias
    return [load_pkcs12(Path(keystore), password, alias, name)]


def cmd_patch(args) -> bool:
    apk = Path(args.apk)
    if not apk.is_file():
        err(f"APK not found: {apk}"); return False
    try:
        settings = Settings.from_env(args.env)
        spec = PatchSpec.from_file(Path(args.spec)) if args.spec else DEFAULT_PATCH
        material = _material(args, settings)
    except ConfigError as exc:
        err(str(exc)); return False

    info(f"Archive : {apk.name}  ({apk.stat().st_size // 1024}K)")
    info(f"Class   : {spec.target_class}")
    info(f"Method  : {spec.target_signature}")

    pipeline = PatchPipeline(
        Baksmali(settings), Smali(settings), ApkSigner(settings),
        spec=spec,
        min_sdk=args.min_sdk if args.min_sdk is not None else settings.min_sdk,
        temp_root=settings.temp_root,
        keep_unsigned=args.keep_unsigned)
    result = pipeline.run(apk, Path(args.output), material)
    if result.success:
        ok(f"{result.message}: {result.output}")
    else:
        err(f"{result.cause.value if result.cause else 'failed'}: {result.message}")
        if result.unsigned_output:
            info(f"Unsigned output: {result.unsigned_output}")
    return result.success


def cmd_dexes(args) -> bool:
    try:
        images = select_from_archive(Path(args.apk))
    except PatchError as exc:
        err(str(exc)); return False
    for ref in images:
        print(f"  {ref.entry:<20} priority {ref.priority}")
    return True


def cmd_inspect(args) -> bool:
    apk = Path(args.apk)
    try:
        layout = list(rebuilder.entry_layout(apk))
        names = archive_index.list_entries(apk)
    except PatchError as exc:
        err(str(exc)); return False
    print(f"\n{'═'*72}")
    print(f"  APK     : {apk.name}")
    print(f"  Size    : {apk.stat().st_size / 1024 / 1024:.2f} MB")
    print(f"  Entries : {len(names)}")
    print(f"{'─'*72}")
    print(f"  {'Entry':<40} {'Comp':>8}  {'Aligned':>8}  {'Data Offset':>10}")
    print(f"{'─'*72}")
    for e in layout:
        comp = "STORE" if e.compress_type == zipfile.ZIP_STORED else "DEFLATE"
        flag = " ◄ MUST-STORE" if e.must_store else (" ◄ SIGNATURE" if e.signing else "")
        aligned = "✓" if e.aligned or e.compress_type != zipfile.ZIP_STORED else "✗"
        print(f"  {e.name:<40} {comp:>8}  {aligned:>8}  {e.data_offset:>10}{flag}")
    print(f"{'═'*72}\n")
    for issue in rebuilder.verify_alignment(apk):
        warn(f"  ✗ {issue}")
    return True


def cmd_verify(args) -> bool:
    try:
        settings = Settings.from_env(args.env)
    except ConfigError as exc:
        err(str(exc)); return False
    all_ok = True
    for name, where in check_tools(settings).items():
        if where:
            ok(f"{name:<10} at {where}")
        else:
            err(f"{name:<10} not found"); all_ok = False
    return all_ok


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="apksurgeon",
                                description="Patch one smali method inside an APK and re-sign it")
    p.add_argument("-v", "--verbose", action="store_true")
    p.add_argument("--env", help=".env file with tool paths / signing settings")
    sub = p.add_subparsers(dest="cmd")

    pp = sub.add_parser("patch", help="Patch, rebuild and sign")
    pp.add_argument("apk")
    pp.add_argument("-o", "--output", required=True)
    pp.add_argument("--spec", help="JSON file: targetClass, targetSignature, replacementBody")
    pp.add_argument("--keystore", help="PKCS#12 keystore")
    pp.add_argument("--ks-pass")
    pp.add_argument("--alias")
    pp.add_argument("--key", help="private key (PEM or PKCS#8 DER)")
    pp.add_argument("--cert", help="PEM certificate chain")
    pp.add_argument("--key-pass", help="password for --key")
    pp.add_argument("--signer-name", default=DEFAULT_SIGNER_NAME)
    pp.add_argument("--min-sdk", type=int)
    pp.add_argument("--keep-unsigned", action="store_true",
                    help="keep <output>.unsigned.apk if signing fails")

    for name, help_text in (("dexes", "List bytecode images in processing order"),
                            ("inspect", "Print entry map")):
        sp = sub.add_parser(name, help=help_text)
        sp.add_argument("apk")

    sub.add_parser("verify", help="Check external tools")
    return p


def main(argv=None) -> None:
    p = build_parser()
    args = p.parse_args(argv)
    if not args.cmd:
        p.print_help(); sys.exit(1)
    setup_logging(args.verbose)

    dispatch = {
        "patch":   cmd_patch,
        "dexes":   cmd_dexes,
        "inspect": cmd_inspect,
        "verify":  cmd_verify,
    }
    sys.exit(0 if dispatch[args.cmd](args) else 1)


if __name__ == "__main__":
    main()
