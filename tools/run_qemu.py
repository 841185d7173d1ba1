#!/usr/bin/env python3
"""Boot an already-built guest image in QEMU (no build step)."""
import sys

from qemu_harness import Profile, boot


def main():
    sys.exit(boot(Profile.EMULATOR_DEFAULTS, build=False))


if __name__ == "__main__":
    main()
