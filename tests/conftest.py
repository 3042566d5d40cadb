"""Shared fixtures for borrg tests."""

import pathlib

import pytest

CONFIG_TEXT = """
schedule = "0 3 * * *"

[template.default]
compression = { algorithm = "zstd", level = 10 }
stats = true

[template.fast]
compression = "lz4"

[[backup]]
repository = "/srv/borg/a"
passphrase = "hunter2"
path = "/home/a"

[[backup]]
repository = "ssh://backup@host/./b"
passphrase = "swordfish"
template = "fast"
path = ["/etc", "/var/lib"]
"""


@pytest.fixture
def config_file(tmp_path: pathlib.Path) -> pathlib.Path:
    path = tmp_path / "borrg.toml"
    path.write_text(CONFIG_TEXT)
    return path
