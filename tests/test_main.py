import json

import pytest

from sftpool import main
from sftpool.config import config


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    monkeypatch.setattr(config, "CONFIG_PATH", None)


def test_single_host_connection():
    parser = main.build_parser()
    args = parser.parse_args(["--host", "example.com", "--user", "u", "--password", "p", "--name", "files"])

    connections = main.collect_connections(args, parser)

    assert len(connections) == 1
    assert connections[0].name == "files"
    assert connections[0].port == 22
    assert not connections[0].verify_host_key


def test_config_file_and_host(tmp_path):
    (tmp_path / "pool.json").write_text(json.dumps([{"name": "a", "host": "a.example.com", "user": "u", "password": "p"}]))
    parser = main.build_parser()
    args = parser.parse_args([
        "--config", str(tmp_path / "pool.json"),
        "--host", "b.example.com", "--port", "2222", "--user", "u", "--key", "/k", "--verify-host",
    ])

    connections = main.collect_connections(args, parser)

    assert [c.name for c in connections] == ["a", "u@b.example.com:2222"]
    assert connections[1].verify_host_key


@pytest.mark.parametrize("argv", [
    [],
    ["--host", "example.com"],
    ["--host", "example.com", "--user", "u"],
])
def test_invalid_arguments(argv):
    parser = main.build_parser()
    args = parser.parse_args(argv)

    with pytest.raises(SystemExit):
        main.collect_connections(args, parser)


def test_invalid_config_file(tmp_path):
    (tmp_path / "pool.json").write_text("[")
    parser = main.build_parser()
    args = parser.parse_args(["--config", str(tmp_path / "pool.json")])

    with pytest.raises(SystemExit):
        main.collect_connections(args, parser)
