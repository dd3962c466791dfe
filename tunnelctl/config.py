import json
import logging
import os

logger = logging.getLogger(__name__)

CONFIG_PATH = os.environ.get("TUNNELCTL_CONFIG", os.path.join(os.path.expanduser("~"), ".tunnelctl", "config.json"))

DEFAULT_CONFIG = {
    "platform": "desktop",
    "profiles_path": os.path.join(os.path.expanduser("~"), ".tunnelctl", "profiles.json"),
    "credentials_path": os.path.join(os.path.expanduser("~"), ".tunnelctl", "credentials"),
    "log_level": "INFO",
    "settings_timeout": 5.0,
    "libwg_path": None,
}


def load_config(path=None):
    path = path or CONFIG_PATH
    config = DEFAULT_CONFIG.copy()
    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                config.update(json.load(f))
        except (OSError, ValueError) as e:
            logger.error("Error loading config from %s: %s", path, e)
    # Environment wins over the file
    if os.getenv("TUNNELCTL_PLATFORM"):
        config["platform"] = os.getenv("TUNNELCTL_PLATFORM")
    if os.getenv("TUNNELCTL_LIBWG"):
        config["libwg_path"] = os.getenv("TUNNELCTL_LIBWG")
    return config


def save_config(config, path=None):
    path = path or CONFIG_PATH
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            json.dump(config, f, indent=2)
        return True
    except OSError as e:
        logger.error("Error saving config to %s: %s", path, e)
        return False
