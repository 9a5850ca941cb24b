"""Shared fixtures for scriptpool tests."""

import textwrap

import pytest


@pytest.fixture
def write_script(tmp_path):
    """Write a script file under tmp_path and return its path."""

    def _write(name: str, content: str):
        path = tmp_path / name
        path.write_text(textwrap.dedent(content).lstrip())
        return path

    return _write


@pytest.fixture
def hello_script(write_script):
    """A script with one successful statement and no error records."""
    return write_script("hello.py", 'print("hello")\n')
