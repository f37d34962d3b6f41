from sandbox_bridge.store.config_store import JsonDocumentStore

__all__ = ["JsonDocumentStore"]
