# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Main entry point for running scriptpool as a module."""

from scriptpool.cli import main

if __name__ == "__main__":
    main()
