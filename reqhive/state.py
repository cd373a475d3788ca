"""
Process-wide state built by the bootstrap and handed to the front end:
settings, the sync engine and the request options every send uses.
"""
from pathlib import Path

import httpx

from reqhive import http_client, storage, tree
from reqhive.config import Settings
from reqhive.store import CollectionStore
from reqhive.sync import FlushReport, SyncEngine


class AppState:
    def __init__(self, settings: Settings, engine: SyncEngine | None = None):
        self.settings = settings
        self.collections_dir = storage.get_collections_dir(settings.collections_dir)
        self.engine = engine if engine is not None else SyncEngine.from_settings(settings)
        self.ssl_verify = settings.ssl_verify
        self.request_timeout = settings.request_timeout

    def _store(self, collection) -> CollectionStore:
        return self.engine.register(CollectionStore(collection, lock_timeout=self.settings.lock_timeout))

    def list_collections(self) -> list[storage.CollectionMeta]:
        return storage.list_collections(self.collections_dir, storage.MetaSorting(self.settings.sorting))

    def open_collection(self, path: Path) -> CollectionStore:
        return self._store(storage.load_collection(path))

    def create_collection(self, name: str, description: str = "") -> CollectionStore:
        return self._store(storage.create_collection(
            name, description,
            collections_dir=self.collections_dir,
            dry_run=self.settings.dry_run,
        ))

    async def send(
        self,
        store: CollectionStore,
        request_id: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> tree.ResponseSummary:
        return await http_client.send_request(
            store, request_id,
            ssl_verify=self.ssl_verify,
            timeout=self.request_timeout,
            transport=transport,
        )

    def close(self) -> dict[str, FlushReport]:
        return self.engine.shutdown()
