"""
Collaborator interfaces consumed by the transfer engine.

Profile, bookmark and SSH key persistence live outside the engine; it only
reads from them to build ConnectionConfig values.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConnectError, NotFoundError
from .models import ConnectionConfig


class ProfileStore(ABC):
    """Saved connection profiles, passwords already decrypted."""

    @abstractmethod
    def get_profile(self, profile_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_profiles(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def save_profile(self, profile: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def delete_profile(self, profile_id: str) -> bool:
        pass


class BookmarkStore(ABC):
    """Saved local and remote paths."""

    @abstractmethod
    def get_bookmark(self, bookmark_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_bookmarks(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def save_bookmark(self, bookmark: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def delete_bookmark(self, bookmark_id: str) -> bool:
        pass


class KeyStore(ABC):
    """SSH private keys managed outside the engine."""

    @abstractmethod
    def get_key(self, key_id: str) -> Tuple[str, Optional[str]]:
        """Return (private key path, passphrase or None)."""


def build_connection_config(profile: Dict[str, Any], keys: Optional[KeyStore] = None) -> ConnectionConfig:
    """
    Turn a stored profile into a ConnectionConfig.

    Profiles with authType 'key' reference either a keyId resolved through
    the KeyStore or a privateKeyPath directly.
    """
    data = dict(profile)
    if data.get('authType', 'password') == 'key':
        data.pop('password', None)
        key_id = data.get('keyId') or data.get('key_id')
        if key_id:
            if keys is None:
                raise ConnectError(f"Profile references SSH key {key_id} but no key store is available")
            path, passphrase = keys.get_key(key_id)
            data['privateKeyPath'] = path
            if passphrase:
                data['passphrase'] = passphrase
        elif not (data.get('privateKeyPath') or data.get('private_key_path')):
            raise ConnectError("Key authentication selected but no private key configured")
    return ConnectionConfig.from_dict(data)


def load_profile_config(profile_id: str, profiles: ProfileStore, keys: Optional[KeyStore] = None) -> ConnectionConfig:
    profile = profiles.get_profile(profile_id)
    if profile is None:
        raise NotFoundError(f"Profile not found: {profile_id}")
    return build_connection_config(profile, keys)


def resolve_bookmark_path(bookmark_id: str, bookmarks: BookmarkStore) -> str:
    bookmark = bookmarks.get_bookmark(bookmark_id)
    if bookmark is None or not bookmark.get('path'):
        raise NotFoundError(f"Bookmark not found: {bookmark_id}")
    return bookmark['path']
