import json
import logging
import os
import os.path
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import jsonschema

package_path = os.path.dirname(__file__)
schema_path = os.path.join(package_path, "config-schema.json")

CONFIG_ENV_VAR = "COMPOUND_PROMPTS_CONFIG"
DATABASE_URL_ENV_VAR = "COMPOUND_PROMPTS_DATABASE_URL"
DEFAULT_CONFIG_PATH = os.path.join(os.path.expanduser("~"), ".compound_prompts", "config.json")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class ConfigError(Exception):
    """Raised when the config file cannot be read or fails schema validation"""
    pass


@dataclass
class EngineConfig:
    database_url: str = "sqlite:///compound_prompts.db"
    bulk_max_workers: int = 8
    log_level: str = "INFO"
    api_prefix: str = "/compound_prompts"

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> "EngineConfig":
        with open(schema_path, "r") as schema_file:
            try:
                jsonschema.validate(config_data, json.load(schema_file))
            except jsonschema.ValidationError as e:
                logging.error("Config file failed to validate against expected schema!")
                raise ConfigError(f"Invalid config: {e.message}") from e

        return cls(**config_data)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def get_config_path() -> str:
    return os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH


def load_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load the engine config.

    A missing file yields the defaults. The database URL can be overridden
    through the environment regardless of the file.
    """
    path = path or get_config_path()
    config_data: Dict[str, Any] = {}

    if os.path.exists(path):
        try:
            with open(path, "r") as config_file:
                config_data = json.load(config_file)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
        logging.info(f"[compound_prompts] Loaded config from: {path}")
    else:
        logging.info(f"[compound_prompts] No config found at {path}, using defaults")

    config = EngineConfig.from_dict(config_data)

    database_url = os.environ.get(DATABASE_URL_ENV_VAR)
    if database_url:
        config.database_url = database_url

    return config


def configure_logging(config: EngineConfig) -> None:
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
