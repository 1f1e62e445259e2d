from __future__ import annotations

import base64
import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import boto3

SOURCES = ("aws_secret", "env", "file")


class SecretResolver:
    """Replaces secret references in variable mappings with their values.

    Plan files only hold references: ``{env = "NAME"}``, ``{file = "path"}`` or
    ``{aws_secret = "id"}``. Any of them may add ``key`` to pick one field out of a
    JSON document. Values are read when a step runs and cached per resolver.
    """

    def __init__(self, *, region: Optional[str] = None, environ: Optional[Mapping[str, str]] = None):
        self.region = region
        self.environ = os.environ if environ is None else environ
        self._client = None
        self._values: dict[tuple[str, str, Optional[str]], Any] = {}

    def resolve(self, values: Mapping[str, Any]) -> dict[str, Any]:
        return {name: self.resolve_value(value) for name, value in values.items()}

    def resolve_value(self, value: Any) -> Any:
        if isinstance(value, list):
            return [self.resolve_value(item) for item in value]
        if not isinstance(value, Mapping):
            return value
        source = self._source_of(value)
        if source is None:
            return {k: self.resolve_value(v) for k, v in value.items()}

        ref = str(value[source])
        field = None if value.get("key") is None else str(value["key"])
        cache_key = (source, ref, field)
        if cache_key not in self._values:
            raw = getattr(self, f"_read_{source}")(ref)
            self._values[cache_key] = raw if field is None else self._field(raw, field, ref)
        return self._values[cache_key]

    @staticmethod
    def _source_of(value: Mapping[str, Any]) -> Optional[str]:
        for source in SOURCES:
            if source in value and set(value) <= {source, "key"}:
                return source
        return None

    def _read_env(self, name: str) -> str:
        try:
            return self.environ[name]
        except KeyError:
            raise RuntimeError(f"Environment variable {name} is not set") from None

    @staticmethod
    def _read_file(path: str) -> str:
        return Path(path).expanduser().read_text().rstrip("\n")

    def _read_aws_secret(self, secret_id: str) -> str:
        if self._client is None:
            if self.region:
                self._client = boto3.client("secretsmanager", region_name=self.region)
            else:
                self._client = boto3.client("secretsmanager")
        response = self._client.get_secret_value(SecretId=secret_id)
        if response.get("SecretString") is not None:
            return response["SecretString"]
        binary = response.get("SecretBinary")
        if binary is None:
            raise RuntimeError(f"Secret {secret_id} has no SecretString or SecretBinary")
        if isinstance(binary, (bytes, bytearray)):
            return bytes(binary).decode()
        return base64.b64decode(binary).decode()

    @staticmethod
    def _field(raw: str, field: str, ref: str) -> Any:
        try:
            return json.loads(raw)[field]
        except (ValueError, KeyError, TypeError):
            raise RuntimeError(f"Secret {ref} has no field '{field}'") from None
