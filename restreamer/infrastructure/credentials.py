"""Stream key lookup.

Stream keys live outside the config model (keychain, env, a separate section of
the YAML file). The supervisor only ever asks for one key by destination id and
treats None as "not configured".
"""

import os
import re
from typing import Dict, Iterable, Mapping, Optional


class CredentialStore:
    """Resolve-by-id stream key lookup. Implementations return None when absent."""

    def get_stream_key(self, destination_id: str) -> Optional[str]:
        raise NotImplementedError


class StaticCredentialStore(CredentialStore):
    def __init__(self, keys: Optional[Mapping[str, str]] = None):
        self._keys: Dict[str, str] = dict(keys or {})

    def set_stream_key(self, destination_id: str, key: str):
        self._keys[destination_id] = key

    def delete_stream_key(self, destination_id: str) -> bool:
        return self._keys.pop(destination_id, None) is not None

    def get_stream_key(self, destination_id: str) -> Optional[str]:
        key = self._keys.get(destination_id)
        return key or None


class EnvCredentialStore(CredentialStore):
    """Reads RESTREAMER_KEY_<ID>, id upper-cased with non-alphanumerics as '_'."""

    def __init__(self, prefix: str = "RESTREAMER_KEY_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def env_name(self, destination_id: str) -> str:
        return self.prefix + re.sub(r"[^A-Za-z0-9]", "_", destination_id).upper()

    def get_stream_key(self, destination_id: str) -> Optional[str]:
        value = self._environ.get(self.env_name(destination_id), "").strip()
        return value or None


class ChainedCredentialStore(CredentialStore):
    """First store with a key wins."""

    def __init__(self, stores: Iterable[CredentialStore]):
        self.stores = list(stores)

    def get_stream_key(self, destination_id: str) -> Optional[str]:
        for store in self.stores:
            key = store.get_stream_key(destination_id)
            if key:
                return key
        return None
