"""Remote service adapters."""

from marketsnap.remote.base import BlobInfo, RemoteStore, classify_status
from marketsnap.remote.firebase import FirebaseRemoteStore

__all__ = ["BlobInfo", "FirebaseRemoteStore", "RemoteStore", "classify_status"]
