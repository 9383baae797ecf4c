from __future__ import annotations

from pathlib import Path
import re

import pytest

from cascademerge import config
from cascademerge.bitbucket_gateway import DEFAULT_API_URL
from cascademerge.config import AppConfig, ConfigError
from cascademerge.models import BitbucketIdentity
from cascademerge.orchestrator import DEFAULT_MARKER


_ENV = {
    "CASCADE_SHARED_KEY": "s3cret",
    "CASCADE_BOT_PASSWORD": "bot-pw",
    "CASCADE_BOT_TOKEN": "tok",
    "APPROVER_ONE_PASSWORD": "pw1",
    "APPROVER_TWO_PASSWORD": "pw2",
}

_MINIMAL = """
[server]
port = 8080

[cascade]
release_branch_prefix = "release/"
development_branch_name = "develop"

[bitbucket]
username = "cascade-bot"
password_env = "CASCADE_BOT_PASSWORD"
""".strip()


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_full(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "cascademerge.toml",
        """
[server]
host = "127.0.0.1"
port = 9443
shared_key_env = "CASCADE_SHARED_KEY"

[cascade]
release_branch_prefix = "release/"
development_branch_name = "develop"
marker = "[cascade]"
worker_count = 8
merge_strategy = " Squash "

[bitbucket]
api_url = "https://bitbucket.internal/2.0"
request_timeout_seconds = 12
token_env = "CASCADE_BOT_TOKEN"
username = "cascade-bot"

[[bitbucket.approvers]]
username = "alice"
password_env = "APPROVER_ONE_PASSWORD"

[[bitbucket.approvers]]
name = "release-manager"
username = "bob"
password_env = "APPROVER_TWO_PASSWORD"
""".strip(),
    )

    loaded = config.load_config(cfg_path, environ=_ENV)

    assert isinstance(loaded, AppConfig)
    assert loaded.server.host == "127.0.0.1"
    assert loaded.server.port == 9443
    assert loaded.server.shared_key == "s3cret"
    assert loaded.cascade.marker == "[cascade]"
    assert loaded.cascade.worker_count == 8
    assert loaded.cascade.merge_strategy == "squash"
    assert loaded.bitbucket.api_url == "https://bitbucket.internal/2.0"
    assert loaded.bitbucket.request_timeout_seconds == 12.0
    assert loaded.bitbucket.primary == BitbucketIdentity(
        name="primary", username="cascade-bot", token="tok"
    )
    assert loaded.bitbucket.approvers == (
        BitbucketIdentity(name="approver_0", username="alice", password="pw1"),
        BitbucketIdentity(name="release-manager", username="bob", password="pw2"),
    )


def test_load_config_applies_defaults(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path / "cascademerge.toml", _MINIMAL)

    loaded = config.load_config(cfg_path, environ={"BITBUCKET_SHARED_KEY": "k", **_ENV})

    assert loaded.server.host == "0.0.0.0"
    assert loaded.server.shared_key == "k"
    assert loaded.cascade.marker == DEFAULT_MARKER
    assert loaded.cascade.worker_count == 4
    assert loaded.cascade.merge_strategy == "merge_commit"
    assert loaded.bitbucket.api_url == DEFAULT_API_URL
    assert loaded.bitbucket.request_timeout_seconds == 30.0
    assert loaded.bitbucket.primary.password == "bot-pw"
    assert loaded.bitbucket.primary.token is None
    assert loaded.bitbucket.approvers == ()


def test_config_repr_hides_secrets(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path / "cascademerge.toml", _MINIMAL)

    loaded = config.load_config(cfg_path, environ={"BITBUCKET_SHARED_KEY": "k3y", **_ENV})

    rendered = repr(loaded)
    assert "bot-pw" not in rendered
    assert "k3y" not in rendered
    assert "cascade-bot" in rendered


@pytest.mark.parametrize(
    "content, expected",
    [
        ("[cascade]\nrelease_branch_prefix='r/'", "[server] is required"),
        (_MINIMAL.replace("port = 8080", "port = 0"), "server.port must be between 1 and 65535"),
        (_MINIMAL.replace("port = 8080", 'port = "http"'), "server.port must be an integer port"),
        (_MINIMAL.replace("port = 8080", "port = true"), "server.port is required"),
        (
            _MINIMAL.replace('release_branch_prefix = "release/"', ""),
            "release_branch_prefix is required",
        ),
        (
            _MINIMAL.replace('development_branch_name = "develop"', 'development_branch_name = ""'),
            "development_branch_name is required",
        ),
        (
            _MINIMAL.replace("[bitbucket]", "[bitbucket]\nrequest_timeout_seconds = 0"),
            "request_timeout_seconds must be > 0",
        ),
        (
            _MINIMAL.replace("[cascade]", "[cascade]\nworker_count = 0"),
            "cascade.worker_count must be >= 1",
        ),
        (
            _MINIMAL.replace("[cascade]", '[cascade]\nmerge_strategy = "rebase"'),
            "merge_strategy must be one of: merge_commit, squash, fast_forward",
        ),
        (
            _MINIMAL.replace('password_env = "CASCADE_BOT_PASSWORD"', ""),
            "[bitbucket] needs token_env, or username and password_env",
        ),
        (
            _MINIMAL.replace('password_env = "CASCADE_BOT_PASSWORD"', 'password_env = "NOPE"'),
            "Environment variable NOPE must be set",
        ),
        (
            _MINIMAL.replace("[server]", '[server]\nshared_key_env = "MISSING_KEY"'),
            "Environment variable MISSING_KEY must be set",
        ),
        (
            _MINIMAL.replace("[bitbucket]", "[bitbucket]\napprovers = 3"),
            "[[bitbucket.approvers]] must be an array of tables",
        ),
        (
            _MINIMAL.replace("[bitbucket]", '[bitbucket]\napprovers = ["alice"]'),
            "bitbucket.approvers[0] must be a TOML table",
        ),
        (
            _MINIMAL
            + """

[[bitbucket.approvers]]
username = "alice"
password_env = "APPROVER_ONE_PASSWORD"

[[bitbucket.approvers]]
username = "alice"
password_env = "APPROVER_TWO_PASSWORD"
""",
            "Duplicate approver username 'alice'",
        ),
    ],
)
def test_load_config_errors(tmp_path: Path, content: str, expected: str) -> None:
    cfg_path = _write(tmp_path / "bad.toml", content)
    environ = {"BITBUCKET_SHARED_KEY": "k", **_ENV}
    with pytest.raises(ConfigError, match=re.escape(expected)):
        config.load_config(cfg_path, environ=environ)


def _env(**overrides: str) -> dict[str, str]:
    env = {
        "PORT": "8080",
        "BITBUCKET_USERNAME": "cascade-bot",
        "BITBUCKET_PASSWORD": "pw",
        "RELEASE_BRANCH_PREFIX": "release/",
        "DEVELOPMENT_BRANCH_NAME": "develop",
        "BITBUCKET_SHARED_KEY": "s3cret",
    }
    env.update(overrides)
    return {key: value for key, value in env.items() if value}


def test_load_config_from_env_with_approvers() -> None:
    loaded = config.load_config_from_env(
        _env(
            BITBUCKET_USERNAME_0="alice",
            BITBUCKET_PASSWORD_0="pw0",
            BITBUCKET_USERNAME_1="bob",
            BITBUCKET_PASSWORD_1="pw1",
            BITBUCKET_USERNAME_3="ignored",
            BITBUCKET_PASSWORD_3="pw3",
        )
    )

    assert loaded.server.port == 8080
    assert loaded.server.shared_key == "s3cret"
    assert loaded.cascade.release_branch_prefix == "release/"
    assert loaded.cascade.development_branch_name == "develop"
    assert loaded.cascade.marker == DEFAULT_MARKER
    assert loaded.bitbucket.primary == BitbucketIdentity(
        name="primary", username="cascade-bot", password="pw"
    )
    assert [identity.username for identity in loaded.bitbucket.approvers] == ["alice", "bob"]
    assert [identity.name for identity in loaded.bitbucket.approvers] == [
        "approver_0",
        "approver_1",
    ]


def test_load_config_from_env_prefers_token() -> None:
    loaded = config.load_config_from_env(
        _env(BITBUCKET_TOKEN="tok", BITBUCKET_USERNAME="", BITBUCKET_PASSWORD="")
    )

    assert loaded.bitbucket.primary.token == "tok"
    assert loaded.bitbucket.primary.username is None


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({"PORT": ""}, "PORT is required"),
        ({"PORT": "eighty"}, "PORT must be an integer port"),
        ({"PORT": "70000"}, "PORT must be between 1 and 65535"),
        ({"BITBUCKET_USERNAME": ""}, "BITBUCKET_TOKEN or BITBUCKET_USERNAME must be set"),
        ({"BITBUCKET_PASSWORD": ""}, "BITBUCKET_PASSWORD must be set"),
        ({"BITBUCKET_USERNAME_0": "alice"}, "BITBUCKET_PASSWORD_0 must be set"),
        ({"RELEASE_BRANCH_PREFIX": ""}, "RELEASE_BRANCH_PREFIX must be set"),
        ({"DEVELOPMENT_BRANCH_NAME": ""}, "DEVELOPMENT_BRANCH_NAME must be set"),
        ({"BITBUCKET_SHARED_KEY": ""}, "BITBUCKET_SHARED_KEY must be set"),
    ],
)
def test_load_config_from_env_errors(overrides: dict[str, str], expected: str) -> None:
    with pytest.raises(ConfigError, match=re.escape(expected)):
        config.load_config_from_env(_env(**overrides))


def test_helpers() -> None:
    assert config._require_table({"x": {}}, "x") == {}
    with pytest.raises(ConfigError, match="required and must be a TOML table"):
        config._require_table({"x": 3}, "x")
    with pytest.raises(ConfigError, match="must have string keys"):
        config._require_table({"x": {1: "v"}}, "x")

    assert config._optional_str({}, "k") is None
    with pytest.raises(ConfigError, match="non-empty string"):
        config._optional_str({"k": ""}, "k")

    assert config._int_with_default({}, "k", 7) == 7
    with pytest.raises(ConfigError, match="must be an integer"):
        config._int_with_default({"k": True}, "k", 7)

    assert config._positive_number_with_default({"k": 1.5}, "k", 3.0) == 1.5
    with pytest.raises(ConfigError, match="must be a number"):
        config._positive_number_with_default({"k": "1"}, "k", 3.0)

    assert config._require_port("443", key="p") == 443
    assert config._merge_strategy_with_default({}, "k", "fast_forward") == "fast_forward"
