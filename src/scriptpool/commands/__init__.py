# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Command groups attached to the scriptpool CLI."""
