"""
Portable build helper: runs PyInstaller to produce a single movie-server binary.

Usage:
    python build_portable.py

This script expects PyInstaller installed in the active environment
(pip install .[build]).
"""
import subprocess
import sys
from pathlib import Path

ENTRY = "movie_server.py"
DIST_NAME = "movie-server"


def main():
    # ensure pyinstaller installed
    try:
        import PyInstaller  # noqa: F401
    except ImportError:
        print("PyInstaller not installed. Installing...")
        subprocess.check_call([sys.executable, "-m", "pip", "install", "pyinstaller"])

    print("Running PyInstaller...")
    subprocess.check_call([
        sys.executable, "-m", "PyInstaller", "--onefile", "--console",
        "--name", DIST_NAME, ENTRY,
    ])

    binaries = list(Path("dist").glob(f"{DIST_NAME}*"))
    if not binaries:
        print(f"No {DIST_NAME} binary in dist/. Build may have failed.")
        return 1
    print(f"Build complete: {binaries[0]}")
    print("Set MOVIE_DIR to choose the served folder before starting it.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
