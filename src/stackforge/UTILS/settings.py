"""
Runtime settings read from the process environment and an optional .env file.
"""
import os
from typing import Dict, List, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ValidationError, field_validator

from ..exceptions import ConfigurationError

DEFAULT_REGION = "us-east-1"

# Environment variable for each settings field.
ENV_VARS = {
    "templates_dir": "STACKFORGE_TEMPLATES_DIR",
    "parameters_dir": "STACKFORGE_PARAMETERS_DIR",
    "config_file": "STACKFORGE_CONFIG",
    "wait_timeout": "STACKFORGE_WAIT_TIMEOUT",
    "change_set_timeout": "STACKFORGE_CHANGE_SET_TIMEOUT",
    "poll_interval": "STACKFORGE_POLL_INTERVAL",
    "max_poll_interval": "STACKFORGE_MAX_POLL_INTERVAL",
    "max_attempts": "STACKFORGE_MAX_ATTEMPTS",
    "capabilities": "STACKFORGE_CAPABILITIES",
    "log_level": "LOG_LEVEL",
}

REGION_VARS = ("STACKFORGE_REGION", "AWS_REGION", "AWS_DEFAULT_REGION")


class Settings(BaseModel):
    """
    Tunables shared by every command. Command line options take precedence.
    """
    region: str = DEFAULT_REGION
    templates_dir: str = "cloudformation"
    parameters_dir: str = "cloudformation/parameters"
    config_file: str = "stacks.yml"
    wait_timeout: float = 3600.0
    change_set_timeout: float = 300.0
    poll_interval: float = 5.0
    max_poll_interval: float = 30.0
    max_attempts: int = 5
    capabilities: List[str] = ["CAPABILITY_NAMED_IAM"]
    log_level: str = "WARNING"

    @field_validator("capabilities", mode="before")
    @classmethod
    def _split(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None, dotenv_path: Optional[str] = None) -> "Settings":
        """
        Builds settings from environment variables.

        :param env: Variables to read; defaults to os.environ after loading a .env file.
        :param dotenv_path: Explicit .env file; otherwise one is searched from the working directory.
        :raises ConfigurationError: If a variable holds a value of the wrong type.
        """
        if env is None:
            load_dotenv(dotenv_path or find_dotenv(usecwd=True))
            env = dict(os.environ)

        values = {}
        for field_name, var in ENV_VARS.items():
            if env.get(var):
                values[field_name] = env[var]
        for var in REGION_VARS:
            if env.get(var):
                values["region"] = env[var]
                break

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"invalid settings: {e}")
