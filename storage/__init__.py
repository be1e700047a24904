from storage.object_store import LocalObjectStore, ObjectStore

__all__ = ["LocalObjectStore", "ObjectStore"]
