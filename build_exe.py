"""
Build script for the Mail Merge portable Windows .exe

Usage:
    python build_exe.py

Output:
    dist/MailMerge.exe   (portable, no installer needed)

Requirements:
    pip install pyinstaller>=6.0

PDF conversion still needs LibreOffice installed on the target machine.
"""

import subprocess
import sys
import shutil
import time
from pathlib import Path

ROOT = Path(__file__).parent
ICON = ROOT / "assets" / "icon.ico"
ENTRY = ROOT / "mail_merge_gui.py"
APP_NAME = "MailMerge"

HIDDEN_IMPORTS = [
    "docx",
    "docx.oxml.ns",
    "openpyxl",
    "openpyxl.cell._writer",
    "lxml._elementpath",
]


def cleanup_build_dirs():
    """Remove build and dist directories so PyInstaller starts clean."""
    for dirname in ["build", "dist"]:
        dirpath = ROOT / dirname
        if dirpath.exists():
            try:
                print(f"Cleaning {dirname}/ directory...")
                shutil.rmtree(dirpath)
            except PermissionError:
                print(f"  WARNING: Could not fully remove {dirname}/ (may be locked)")
            # Give the OS a moment to release file locks.
            time.sleep(0.5)


def build_command(icon: Path = None) -> list:
    cmd = [
        sys.executable, "-m", "PyInstaller",
        "--onefile",
        "--windowed",           # no console window
        f"--name={APP_NAME}",
        # python-docx ships its default template as package data
        "--collect-data=docx",
    ]
    cmd.extend(f"--hidden-import={module}" for module in HIDDEN_IMPORTS)
    if icon is not None:
        cmd.append(f"--icon={icon}")
    cmd.append(str(ENTRY))
    return cmd


def main():
    if not ENTRY.exists():
        print(f"ERROR: Entry point not found: {ENTRY}")
        sys.exit(1)

    try:
        import PyInstaller  # noqa: F401
    except ImportError:
        print("PyInstaller not found. Installing...")
        subprocess.check_call([sys.executable, "-m", "pip", "install", "pyinstaller>=6.0"])

    cleanup_build_dirs()

    if ICON.exists():
        cmd = build_command(ICON)
    else:
        print(f"INFO: No icon found at {ICON} — building without icon.")
        cmd = build_command()

    print("\n" + "=" * 60)
    print(f"Building {APP_NAME}.exe ...")
    print("=" * 60)
    print(" ".join(str(c) for c in cmd))
    print()

    result = subprocess.run(cmd, cwd=ROOT)

    if result.returncode != 0:
        print("\nERROR: PyInstaller build failed (see output above).")
        sys.exit(result.returncode)

    exe_path = ROOT / "dist" / f"{APP_NAME}.exe"
    print("\n" + "=" * 60)
    if exe_path.exists():
        size_mb = exe_path.stat().st_size / (1024 * 1024)
        print(f"SUCCESS: {exe_path}  ({size_mb:.1f} MB)")
    else:
        print(f"WARNING: Build finished but {exe_path} not found. Check PyInstaller output.")
    print("=" * 60)


if __name__ == "__main__":
    main()
