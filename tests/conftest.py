"""Shared fixtures for pytopdirs tests."""

import os

import pytest

MB = 1024**2


class CollectingSink:
    """Error sink keeping messages in memory."""

    def __init__(self):
        self.messages = []

    def record(self, message):
        self.messages.append(message)


@pytest.fixture
def sink():
    return CollectingSink()


def make_file(path, size):
    """Create a (sparse) file of exactly size bytes, with parent directories."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.truncate(size)
    return path
