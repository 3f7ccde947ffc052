"""
Protected-storage backends used by `KeyManager` to persist key material
outside the data boxes.

Backends
- SsmSecretStore: AWS SSM Parameter Store, `SecureString` parameters.
- KeyringSecretStore: the OS credential vault (Keychain, Secret Service,
  Windows Credential Locker) through `keyring`.
- InMemorySecretStore: process-local; material is lost on exit.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Optional, Protocol

import boto3
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from common.config import StorageSettings


class SecretStore(Protocol):
    def read(self, name: str) -> Optional[str]: ...

    def write(self, name: str, value: str) -> None: ...

    def delete(self, name: str) -> None: ...


class SsmSecretStore:
    """
    Secrets as SSM parameters named `{prefix}{name}`.

    - `read` returns None when the parameter does not exist; access errors
      and other API failures propagate as `ClientError`.
    - `write` stores a `SecureString`, overwriting any previous value. When
      `kms_key_id` is given it is used instead of the account default key.
    """

    def __init__(
        self,
        prefix: str,
        *,
        ssm: Optional[object] = None,
        kms_key_id: Optional[str] = None,
        region_name: Optional[str] = None,
    ) -> None:
        if not prefix:
            raise ValueError("prefix is required")
        self._prefix = prefix
        self._kms_key_id = kms_key_id
        self._ssm = ssm or boto3.client("ssm", region_name=region_name)

    def _full(self, name: str) -> str:
        return f"{self._prefix}{name}"

    def read(self, name: str) -> Optional[str]:
        try:
            resp = self._ssm.get_parameter(Name=self._full(name), WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code == "ParameterNotFound":
                return None
            raise
        val = resp.get("Parameter", {}).get("Value")
        return val if isinstance(val, str) and val != "" else None

    def write(self, name: str, value: str) -> None:
        kwargs = {
            "Name": self._full(name),
            "Value": value,
            "Type": "SecureString",
            "Overwrite": True,
        }
        if self._kms_key_id:
            kwargs["KeyId"] = self._kms_key_id
        self._ssm.put_parameter(**kwargs)

    def delete(self, name: str) -> None:
        try:
            self._ssm.delete_parameter(Name=self._full(name))
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code != "ParameterNotFound":
                raise


class KeyringSecretStore:
    """Secrets in the platform credential vault under one service name."""

    def __init__(self, service: str = "boxvault") -> None:
        if not service:
            raise ValueError("service is required")
        self.service = service

    def read(self, name: str) -> Optional[str]:
        import keyring

        return keyring.get_password(self.service, name)

    def write(self, name: str, value: str) -> None:
        import keyring

        keyring.set_password(self.service, name, value)

    def delete(self, name: str) -> None:
        import keyring
        from keyring.errors import PasswordDeleteError

        try:
            keyring.delete_password(self.service, name)
        except PasswordDeleteError:
            pass  # already absent


class InMemorySecretStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.values: Dict[str, str] = dict(initial or {})

    def read(self, name: str) -> Optional[str]:
        return self.values.get(name)

    def write(self, name: str, value: str) -> None:
        self.values[name] = value

    def delete(self, name: str) -> None:
        self.values.pop(name, None)


def secret_store_for(settings: "StorageSettings") -> SecretStore:
    """Build the protected store selected by `settings.secret_backend`."""
    if settings.secret_backend == "ssm":
        if not settings.ssm_prefix:
            raise ValueError("ssm_prefix is required for the ssm secret backend")
        return SsmSecretStore(settings.ssm_prefix)
    if settings.secret_backend == "keyring":
        return KeyringSecretStore(settings.keyring_service)
    return InMemorySecretStore()
