import os
import tomllib

from deepmerge import always_merger

DEFAULT_CONFIG_PATH = "default.config.toml"
USER_CONFIG_PATH = "user.config.toml"


def get_config(
    default_path: str | None = None, user_path: str | None = None
) -> dict:
    """
    Load the shipped defaults and deep-merge the user's overrides on top.

    Paths can be overridden with the PREVIEWER_DEFAULT_CONFIG and
    PREVIEWER_USER_CONFIG environment variables. A missing user file is
    not an error; a malformed one is.
    """
    default_path = default_path or os.environ.get(
        "PREVIEWER_DEFAULT_CONFIG", DEFAULT_CONFIG_PATH
    )
    user_path = user_path or os.environ.get("PREVIEWER_USER_CONFIG", USER_CONFIG_PATH)

    try:
        with open(default_path, "rb") as f:
            config = tomllib.load(f)
    except FileNotFoundError:
        config = {}
    try:
        with open(user_path, "rb") as f:
            overrides = tomllib.load(f)
    except FileNotFoundError:
        overrides = {}

    return always_merger.merge(config, overrides)


def section(config: dict, name: str) -> dict:
    """Return a config table, treating a missing or non-table value as empty."""
    value = config.get(name, {})
    return value if isinstance(value, dict) else {}


def sqlite_url(path: str) -> str:
    """Build a mautrix ``async_db`` URL for a SQLite file, relative or absolute."""
    if os.path.isabs(path):
        # The backend drops one leading slash from the URL path.
        return "sqlite:///" + path
    return "sqlite:" + path
