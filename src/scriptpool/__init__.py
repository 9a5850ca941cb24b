# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""scriptpool - run script files against a bounded pool of interpreter contexts."""

__version__ = "0.1.0"
