"""
JSON file backend for committed state.

Every write rewrites the whole document through a temporary file and
``os.replace`` so a crash never leaves a half-written state file behind.
"""
import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..concurrency.executors import run_io
from ..provisioning.state import ResourceState

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class JsonFileStateBackend:
    """
    Committed state persisted to a single JSON file.

    Example:
        ```python
        backend = JsonFileStateBackend("infra/state.json")
        engine = ProvisioningEngine(provider, backend)
        ```
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._loaded = False
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def _writer_lock(self) -> asyncio.Lock:
        # one writer at a time; the whole file is rewritten on each commit
        loop = asyncio.get_running_loop()
        if self._lock is None or loop is not self._lock_loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def load(self) -> Dict[str, ResourceState]:
        async with self._writer_lock():
            self._documents = await run_io(self._read)
            self._loaded = True
            return {name: ResourceState.from_dict(doc) for name, doc in self._documents.items()}

    async def put(self, state: ResourceState) -> None:
        async with self._writer_lock():
            await self._ensure_loaded()
            documents = dict(self._documents)
            documents[state.name] = state.to_dict()
            await run_io(self._write, documents)
            self._documents = documents

    async def delete(self, name: str) -> None:
        async with self._writer_lock():
            await self._ensure_loaded()
            if name not in self._documents:
                return
            documents = {k: v for k, v in self._documents.items() if k != name}
            await run_io(self._write, documents)
            self._documents = documents

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._documents = await run_io(self._read)
            self._loaded = True

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            logger.info(f"[STATE] No state file at {self.path}, starting empty")
            return {}
        with open(self.path, "r", encoding="utf-8") as fh:
            document = json.load(fh)
        version = document.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise ValueError(f"Unsupported state file version {version} in {self.path}")
        return dict(document.get("resources") or {})

    def _write(self, documents: Dict[str, Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": STATE_FORMAT_VERSION, "resources": documents}
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
