#!/usr/bin/env python3
"""Run `cargo build`, then boot the fresh guest image on a 6-core q35 machine."""
import sys

from qemu_harness import Profile, boot


def main():
    sys.exit(boot(Profile.Q35_SMP6, build=True))


if __name__ == "__main__":
    main()
