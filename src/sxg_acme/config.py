"""YAML configuration input and the generated artifact."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sxg_acme.eab import EabConfig
from sxg_acme.exceptions import ConfigurationError
from sxg_acme.models import Account

ARTIFACT_HEADER = (
    '# This file is generated by command "sxg-acme gen-config".\n'
    "# Please do not modify.\n"
)


class PreIssuedCertConfig(BaseModel):
    """A certificate obtained elsewhere, with its issuer."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["pre_issued"]
    cert_file: str
    issuer_file: str


class AcmeCertConfig(BaseModel):
    """Obtain the certificate from an ACME server."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["create_acme_account"]
    server_url: str
    contact_email: str
    agreed_terms_of_service: str
    sxg_cert_request_file: str
    eab: EabConfig | None = None


class InputConfig(BaseModel):
    """The operator-written input file."""

    model_config = ConfigDict(extra="forbid")

    html_host: str
    certificates: PreIssuedCertConfig | AcmeCertConfig = Field(discriminator="type")


class Artifact(BaseModel):
    """Values produced by gen-config and read back on the next run."""

    acme_account: Account | None = None
    acme_private_key_instruction: str | None = None


def _read_yaml(path: str | Path) -> object:
    try:
        with open(path) as stream:
            return yaml.safe_load(stream)
    except OSError as e:
        raise ConfigurationError(f'Failed to read file "{path}": {e.strerror}') from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f'File "{path}" is not valid YAML: {e}') from e


def load_config(path: str | Path) -> InputConfig:
    """Load and validate the input YAML.

    Raises:
        ConfigurationError: If the file is unreadable or invalid.
    """
    data = _read_yaml(path)
    try:
        return InputConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f'Invalid config "{path}": {e}') from e


def read_artifact(path: str | Path) -> Artifact:
    """Load a previously written artifact.

    Raises:
        ConfigurationError: If the file is unreadable or invalid.
    """
    data = _read_yaml(path)
    try:
        return Artifact.model_validate(data or {})
    except ValidationError as e:
        raise ConfigurationError(f'Invalid artifact "{path}": {e}') from e


def write_artifact(path: str | Path, artifact: Artifact) -> None:
    body = yaml.safe_dump(artifact.model_dump(mode="json"), sort_keys=False)
    Path(path).write_text(ARTIFACT_HEADER + body, encoding="utf-8")
