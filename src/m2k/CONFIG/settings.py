"""
Runtime configuration.

Values are read from M2K_* variables, first from a .env file and then from
the process environment, with explicit overrides (command line flags) on top.
"""
import os
from typing import Dict, Mapping, Optional
from dotenv import dotenv_values
from pydantic import BaseModel, Field, SecretStr, field_validator

ENV_PREFIX = "M2K_"


class M2KConfig(BaseModel):
    """
    Settings shared by every command.
    """
    namespace: str = "default"
    registry: Optional[str] = None
    kube_context: Optional[str] = None
    kubeconfig: Optional[str] = None

    # Registry login; docker_config is read for registries without one
    registry_username: Optional[str] = None
    registry_password: Optional[SecretStr] = None
    docker_config: Optional[str] = None

    # Where pipeline records live: 'kubectl' (a ConfigMap) or 'file'
    state_backend: str = "kubectl"
    state_dir: Optional[str] = None
    image_index: Optional[str] = None

    builder: str = "docker"
    buildx_builder: Optional[str] = None
    push: bool = False
    max_workers: int = Field(default=4, ge=1)

    shell: str = "sh"
    kubectl_bin: str = "kubectl"
    docker_bin: str = "docker"
    log_level: str = "INFO"

    @field_validator("state_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        if value not in ("kubectl", "file"):
            raise ValueError("state_backend must be 'kubectl' or 'file'")
        return value

    @field_validator("builder")
    @classmethod
    def _check_builder(cls, value: str) -> str:
        if value not in ("docker", "buildx"):
            raise ValueError("builder must be 'docker' or 'buildx'")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("registry", "kube_context", "kubeconfig", "state_dir", "image_index", "buildx_builder",
                     "registry_username", "docker_config")
    @classmethod
    def _empty_is_unset(cls, value: Optional[str]) -> Optional[str]:
        return value or None


def _prefixed(values: Mapping[str, Optional[str]]) -> Dict[str, str]:
    fields = M2KConfig.model_fields
    settings = {}
    for key, value in values.items():
        if not key.startswith(ENV_PREFIX) or value is None:
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in fields:
            settings[name] = value
    return settings


def load_config(env_file: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None,
                **overrides) -> M2KConfig:
    """
    Builds the configuration.

    Precedence, highest first: `overrides`, the environment, the .env file,
    defaults. Overrides set to None are ignored so unset command line flags
    do not mask other sources.

    :param env_file: .env file to read. Defaults to `.env` in the current
        directory when it exists.
    :param environ: Environment to read instead of `os.environ`.
    :raises pydantic.ValidationError: If a value is invalid.
    """
    if env_file is None and os.path.isfile(".env"):
        env_file = ".env"

    settings: Dict[str, object] = {}
    if env_file:
        settings.update(_prefixed(dotenv_values(env_file)))
    settings.update(_prefixed(os.environ if environ is None else environ))
    settings.update({key: value for key, value in overrides.items() if value is not None})
    return M2KConfig(**settings)
