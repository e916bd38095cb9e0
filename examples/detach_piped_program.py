#!/usr/bin/env python3
"""
Run a piped program detached from the login that started it.

Usage:
    curl -fsSL https://example.invalid/setup.py | python examples/detach_piped_program.py setup-job -- ARGS...

The program text arrives on stdin with no file behind it, so it is saved
under the settings' bin_dir before the supervisor is asked to run it.
"""

import sys
from pathlib import Path

from keytunnel.config import load_settings_or_default
from keytunnel.detach import DetachedExecutionManager, ProgramImage
from keytunnel.supervisor import default_supervisor


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    unit = sys.argv[1]
    args = sys.argv[3:] if sys.argv[2:3] == ["--"] else sys.argv[2:]

    settings = load_settings_or_default()
    image = ProgramImage.from_stream(sys.stdin.buffer, args)
    manager = DetachedExecutionManager(default_supervisor(settings.unit_dir), settings.bin_dir)
    handle = manager.run_detached(image, env={}, log_sink=Path(settings.log_dir) / f"{unit}.log", unit=unit)

    if handle.detached:
        print(f"Started {unit}; logs in {handle.log_path}")
        sys.exit(0)
    sys.exit(handle.returncode)


if __name__ == "__main__":
    main()
