import configparser
import os

CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".lifecycle_hooks")
CONFIG_FILE = os.path.join(CONFIG_DIR, "hooks.cfg")
DEFAULT_SECTION = "hooks"

MODEL_ENV_VAR = "LIFECYCLE_HOOKS_MODEL"

_TRUTHY = {"1", "true", "yes", "on"}


def _load_config() -> configparser.ConfigParser:
    config = configparser.ConfigParser()
    if os.path.isfile(CONFIG_FILE):
        config.read(CONFIG_FILE)
    if DEFAULT_SECTION not in config:
        config[DEFAULT_SECTION] = {}
    return config


def get_value(key: str):
    config = _load_config()
    val = config.get(DEFAULT_SECTION, key, fallback=None)
    return val


def set_config_value(key: str, value: str):
    config = _load_config()
    config[DEFAULT_SECTION][key] = value
    os.makedirs(CONFIG_DIR, exist_ok=True)
    with open(CONFIG_FILE, "w") as f:
        config.write(f)


def _get_bool(key: str, default: bool = False) -> bool:
    val = get_value(key)
    if val is None:
        return default
    return str(val).strip().lower() in _TRUTHY


def get_evaluator_model_name():
    """Model used for prompt/agent hooks, e.g. 'openai:gpt-4o-mini'."""
    return os.environ.get(MODEL_ENV_VAR) or get_value("evaluator_model")


def get_fail_closed_on_timeout() -> bool:
    return _get_bool("fail_closed_on_timeout")


def get_hooks_disabled() -> bool:
    return _get_bool("disable_all_hooks")
