from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import tomllib
from typing import Mapping, cast

from cascademerge.bitbucket_gateway import DEFAULT_API_URL
from cascademerge.models import BitbucketIdentity, MergeStrategy
from cascademerge.orchestrator import DEFAULT_MARKER


_MERGE_STRATEGIES: tuple[MergeStrategy, ...] = ("merge_commit", "squash", "fast_forward")


@dataclass(frozen=True)
class ServerConfig:
    port: int
    shared_key: str
    host: str = "0.0.0.0"

    def __repr__(self) -> str:
        return f"ServerConfig(host={self.host!r}, port={self.port!r})"


@dataclass(frozen=True)
class CascadeConfig:
    release_branch_prefix: str
    development_branch_name: str
    marker: str = DEFAULT_MARKER
    worker_count: int = 4
    merge_strategy: MergeStrategy = "merge_commit"


@dataclass(frozen=True)
class BitbucketConfig:
    primary: BitbucketIdentity
    approvers: tuple[BitbucketIdentity, ...] = ()
    api_url: str = DEFAULT_API_URL
    request_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class AppConfig:
    server: ServerConfig
    cascade: CascadeConfig
    bitbucket: BitbucketConfig


class ConfigError(ValueError):
    pass


def load_config(path: Path, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    env = os.environ if environ is None else environ
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    server_data = _require_table(data, "server")
    cascade_data = _require_table(data, "cascade")
    bitbucket_data = _require_table(data, "bitbucket")

    server = ServerConfig(
        host=_str_with_default(server_data, "host", "0.0.0.0"),
        port=_require_port(server_data.get("port"), key="server.port"),
        shared_key=_require_env(
            env, _str_with_default(server_data, "shared_key_env", "BITBUCKET_SHARED_KEY")
        ),
    )

    cascade = CascadeConfig(
        release_branch_prefix=_require_str(cascade_data, "release_branch_prefix"),
        development_branch_name=_require_str(cascade_data, "development_branch_name"),
        marker=_str_with_default(cascade_data, "marker", DEFAULT_MARKER),
        worker_count=_int_with_default(cascade_data, "worker_count", 4),
        merge_strategy=_merge_strategy_with_default(cascade_data, "merge_strategy", "merge_commit"),
    )
    if cascade.worker_count < 1:
        raise ConfigError("cascade.worker_count must be >= 1")

    bitbucket = BitbucketConfig(
        primary=_parse_primary_identity(bitbucket_data, env),
        approvers=_parse_approvers(bitbucket_data, env),
        api_url=_str_with_default(bitbucket_data, "api_url", DEFAULT_API_URL),
        request_timeout_seconds=_positive_number_with_default(
            bitbucket_data, "request_timeout_seconds", 30.0
        ),
    )
    return AppConfig(server=server, cascade=cascade, bitbucket=bitbucket)


def load_config_from_env(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Build configuration from the PORT / BITBUCKET_* / *_BRANCH_* variables."""
    env = os.environ if environ is None else environ

    port = _require_port(env.get("PORT"), key="PORT")
    token = env.get("BITBUCKET_TOKEN", "")
    username = env.get("BITBUCKET_USERNAME", "")
    password = env.get("BITBUCKET_PASSWORD", "")
    if not token:
        if not username:
            raise ConfigError("BITBUCKET_TOKEN or BITBUCKET_USERNAME must be set")
        if not password:
            raise ConfigError("BITBUCKET_PASSWORD must be set")
    primary = BitbucketIdentity(
        name="primary",
        username=username or None,
        password=password or None,
        token=token or None,
    )

    approvers: list[BitbucketIdentity] = []
    index = 0
    while True:
        approver_username = env.get(f"BITBUCKET_USERNAME_{index}", "")
        if not approver_username:
            break
        approver_password = env.get(f"BITBUCKET_PASSWORD_{index}", "")
        if not approver_password:
            raise ConfigError(f"BITBUCKET_PASSWORD_{index} must be set")
        approvers.append(
            BitbucketIdentity(
                name=f"approver_{index}",
                username=approver_username,
                password=approver_password,
            )
        )
        index += 1

    release_branch_prefix = env.get("RELEASE_BRANCH_PREFIX", "")
    if not release_branch_prefix:
        raise ConfigError("RELEASE_BRANCH_PREFIX must be set")
    development_branch_name = env.get("DEVELOPMENT_BRANCH_NAME", "")
    if not development_branch_name:
        raise ConfigError("DEVELOPMENT_BRANCH_NAME must be set")
    shared_key = env.get("BITBUCKET_SHARED_KEY", "")
    if not shared_key:
        raise ConfigError("BITBUCKET_SHARED_KEY must be set")

    return AppConfig(
        server=ServerConfig(port=port, shared_key=shared_key),
        cascade=CascadeConfig(
            release_branch_prefix=release_branch_prefix,
            development_branch_name=development_branch_name,
        ),
        bitbucket=BitbucketConfig(primary=primary, approvers=tuple(approvers)),
    )


def _parse_primary_identity(
    bitbucket_data: dict[str, object], env: Mapping[str, str]
) -> BitbucketIdentity:
    token_env = _optional_str(bitbucket_data, "token_env")
    username = _optional_str(bitbucket_data, "username")
    password_env = _optional_str(bitbucket_data, "password_env")

    if token_env is not None:
        return BitbucketIdentity(
            name="primary", username=username, token=_require_env(env, token_env)
        )
    if username is None or password_env is None:
        raise ConfigError("[bitbucket] needs token_env, or username and password_env")
    return BitbucketIdentity(
        name="primary", username=username, password=_require_env(env, password_env)
    )


def _parse_approvers(
    bitbucket_data: dict[str, object], env: Mapping[str, str]
) -> tuple[BitbucketIdentity, ...]:
    raw = bitbucket_data.get("approvers", [])
    if not isinstance(raw, list):
        raise ConfigError("[[bitbucket.approvers]] must be an array of tables")

    approvers: list[BitbucketIdentity] = []
    for index, item in enumerate(raw):
        table = _require_subtable(item, table_name=f"bitbucket.approvers[{index}]")
        username = _require_str(table, "username")
        if any(existing.username == username for existing in approvers):
            raise ConfigError(f"Duplicate approver username {username!r}")
        approvers.append(
            BitbucketIdentity(
                name=_str_with_default(table, "name", f"approver_{index}"),
                username=username,
                password=_require_env(env, _require_str(table, "password_env")),
            )
        )
    return tuple(approvers)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_subtable(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _require_env(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "")
    if not value:
        raise ConfigError(f"Environment variable {name} must be set")
    return value


def _require_port(value: object, *, key: str) -> int:
    if isinstance(value, str):
        try:
            value = int(value)
        except ValueError:
            raise ConfigError(f"{key} must be an integer port") from None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} is required and must be an integer port")
    if value < 1 or value > 65535:
        raise ConfigError(f"{key} must be between 1 and 65535")
    return value


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _positive_number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    if value <= 0:
        raise ConfigError(f"{key} must be > 0")
    return float(value)


def _merge_strategy_with_default(
    data: dict[str, object], key: str, default: MergeStrategy
) -> MergeStrategy:
    value = data.get(key, default)
    if not isinstance(value, str) or value.strip().lower() not in _MERGE_STRATEGIES:
        raise ConfigError(f"{key} must be one of: {', '.join(_MERGE_STRATEGIES)}")
    return cast(MergeStrategy, value.strip().lower())
