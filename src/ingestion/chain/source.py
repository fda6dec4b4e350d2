from __future__ import annotations

import asyncio
import inspect
import itertools
import json
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

import requests

from ingestion.chain.normalize import HiveBlockNormalizer
from ingestion.contracts.source import Call, ChainDataSource, DEFAULT_BLOCK_INTERVAL_MS, Raw
from workerbee.exceptions.core import FatalFetchError, TransientFetchError


class HiveRpcSource(ChainDataSource):
    """
    Hive API node over JSON-RPC 2.0.

    Blocking HTTP runs in worker threads so the event loop is never held.
    Connection errors, timeouts, HTTP 429 and 5xx are transient; JSON-RPC
    errors and other HTTP errors are fatal.
    """

    def __init__(
        self,
        *,
        node_url: str = "https://api.hive.blog",
        timeout: float = 10.0,
        block_interval_ms: int = DEFAULT_BLOCK_INTERVAL_MS,
        normalizer: HiveBlockNormalizer | None = None,
        session: requests.Session | None = None,
    ):
        self._node_url = node_url.rstrip("/")
        self._timeout = float(timeout)
        self.block_interval_ms = int(block_interval_ms)
        self._normalizer = normalizer or HiveBlockNormalizer()
        self._session = session or requests.Session()
        self._ids = itertools.count(1)

    # -------------------------------------------------
    # Transport
    # -------------------------------------------------

    def _post(self, payload: Any) -> Any:
        try:
            r = self._session.post(self._node_url, json=payload, timeout=self._timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientFetchError(f"{self._node_url}: {exc}", node=self._node_url) from exc
        if r.status_code == 429 or r.status_code >= 500:
            raise TransientFetchError(f"HTTP {r.status_code} from {self._node_url}", status=r.status_code)
        try:
            r.raise_for_status()
        except requests.HTTPError as exc:
            raise FatalFetchError(f"HTTP {r.status_code} from {self._node_url}", status=r.status_code) from exc
        try:
            return r.json()
        except ValueError as exc:
            raise TransientFetchError(f"invalid JSON from {self._node_url}") from exc

    def _request(self, method: str, params: Mapping[str, Any]) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "method": method, "params": dict(params), "id": next(self._ids)}

    @staticmethod
    def _unwrap(body: Any, method: str) -> Any:
        if not isinstance(body, Mapping):
            raise FatalFetchError(f"{method}: unexpected response type {type(body).__name__}", method=method)
        err = body.get("error")
        if err:
            message = err.get("message") if isinstance(err, Mapping) else str(err)
            code = err.get("code") if isinstance(err, Mapping) else None
            raise FatalFetchError(f"{method}: {message}", method=method, code=code)
        return body.get("result")

    def _call_sync(self, method: str, params: Mapping[str, Any]) -> Any:
        return self._unwrap(self._post(self._request(method, params)), method)

    def _batch_sync(self, calls: Sequence[Call]) -> list[Any]:
        requests_ = [self._request(method, params) for method, params in calls]
        body = self._post(requests_)
        if not isinstance(body, list):
            raise FatalFetchError("batch: expected a JSON array response")
        by_id = {item.get("id"): item for item in body if isinstance(item, Mapping)}
        out = []
        for req in requests_:
            item = by_id.get(req["id"])
            if item is None:
                raise TransientFetchError(f"batch: missing response for {req['method']}")
            out.append(self._unwrap(item, req["method"]))
        return out

    # -------------------------------------------------
    # ChainDataSource
    # -------------------------------------------------

    async def query(self, method: str, params: Mapping[str, Any]) -> Any:
        return await asyncio.to_thread(self._call_sync, method, params)

    async def query_batch(self, calls: Sequence[Call]) -> list[Any]:
        return await asyncio.to_thread(self._batch_sync, list(calls))

    async def get_current_position(self) -> int:
        props = await self.query("database_api.get_dynamic_global_properties", {})
        try:
            return int(props["head_block_number"])
        except (KeyError, TypeError, ValueError) as exc:
            raise FatalFetchError("dynamic global properties without head_block_number") from exc

    async def fetch_unit(self, position: int) -> Raw:
        result = await self.query("block_api.get_block", {"block_num": int(position)})
        block = result.get("block") if isinstance(result, Mapping) else None
        if not block:
            # irreversible/head race: the node has not produced it yet
            raise TransientFetchError(f"block {position} not available yet", position=position)
        try:
            return self._normalizer.normalize(raw=block, position=position)
        except ValueError as exc:
            raise FatalFetchError(f"block {position}: {exc}", position=position) from exc

    async def close(self) -> None:
        self._session.close()


def _plain(x: Any) -> Any:
    """numpy / pyarrow containers from parquet -> plain python."""
    if isinstance(x, Mapping):
        return {str(k): _plain(v) for k, v in x.items()}
    if isinstance(x, (list, tuple)):
        return [_plain(v) for v in x]
    if hasattr(x, "tolist") and not isinstance(x, (str, bytes)):
        return _plain(x.tolist())
    return x


class BlockLogFileSource(ChainDataSource):
    """
    Historical block log backed by local files.

    Accepted layouts:
        blocks.parquet            single parquet file
        blocks.jsonl              JSON lines, one block per line
        root/                     directory of *.parquet files (sorted by name)

    Columns: block_num, timestamp, witness, block_id, previous, transactions
    (`transactions` may be nested data or a JSON string).
    """

    def __init__(
        self,
        path: str | Path,
        *,
        block_interval_ms: int = DEFAULT_BLOCK_INTERVAL_MS,
        normalizer: HiveBlockNormalizer | None = None,
    ):
        self._path = Path(path)
        if not self._path.exists():
            raise FileNotFoundError(f"block log path does not exist: {self._path}")
        self.block_interval_ms = int(block_interval_ms)
        self._normalizer = normalizer or HiveBlockNormalizer()
        self._units = self._load()
        if not self._units:
            raise ValueError(f"block log is empty: {self._path}")

    def _read_frame(self):
        import pandas as pd

        if self._path.is_dir():
            files = sorted(self._path.glob("*.parquet"))
            if not files:
                raise FileNotFoundError(f"No parquet files found under {self._path}")
            return pd.concat([pd.read_parquet(fp) for fp in files], ignore_index=True)
        suffix = self._path.suffix.lower()
        if suffix == ".parquet":
            return pd.read_parquet(self._path)
        if suffix in (".jsonl", ".ndjson", ".json"):
            return pd.read_json(self._path, lines=True, convert_dates=False, dtype=False)
        raise ValueError(f"unsupported block log format: {self._path.suffix!r}")

    def _load(self) -> dict[int, dict[str, Any]]:
        df = self._read_frame()
        if "block_num" not in df.columns:
            raise ValueError(f"block log {self._path} missing 'block_num' column")
        df = df.sort_values("block_num", kind="mergesort")

        units: dict[int, dict[str, Any]] = {}
        for rec in df.to_dict(orient="records"):
            row = {str(k): _plain(v) for k, v in rec.items()}
            txs = row.get("transactions")
            if isinstance(txs, str):
                row["transactions"] = json.loads(txs)
            elif txs is None or (isinstance(txs, float) and txs != txs):
                row["transactions"] = []
            unit = self._normalizer.normalize(raw=row)
            units[unit["block_num"]] = unit
        return units

    @property
    def first_position(self) -> int:
        return min(self._units)

    async def get_current_position(self) -> int:
        return max(self._units)

    async def fetch_unit(self, position: int) -> Raw:
        try:
            return self._units[int(position)]
        except KeyError:
            raise FatalFetchError(
                f"block log {self._path.name} has no block {position}",
                position=int(position),
            ) from None


QueryHandler = Callable[[Mapping[str, Any]], Any]


class InMemoryChainSource(ChainDataSource):
    """
    Chain held in memory; `append()` advances the head.

    Intended for:
      - unit / integration tests
      - replaying synthetic or adversarial block sequences
    """

    def __init__(
        self,
        blocks: Iterable[Mapping[str, Any]] = (),
        *,
        query_handlers: Mapping[str, QueryHandler] | None = None,
        block_interval_ms: int = DEFAULT_BLOCK_INTERVAL_MS,
        normalizer: HiveBlockNormalizer | None = None,
    ):
        self.block_interval_ms = int(block_interval_ms)
        self._normalizer = normalizer or HiveBlockNormalizer()
        self._units: dict[int, Raw] = {}
        self._handlers: dict[str, QueryHandler] = dict(query_handlers or {})
        for raw in blocks:
            self.append(raw)

    def append(self, raw: Mapping[str, Any]) -> Raw:
        unit = self._normalizer.normalize(raw=raw)
        self._units[unit["block_num"]] = unit
        return unit

    async def get_current_position(self) -> int:
        if not self._units:
            raise TransientFetchError("chain has no blocks yet")
        return max(self._units)

    async def fetch_unit(self, position: int) -> Raw:
        try:
            return self._units[int(position)]
        except KeyError:
            raise TransientFetchError(f"block {position} not available yet", position=int(position)) from None

    async def query(self, method: str, params: Mapping[str, Any]) -> Any:
        handler = self._handlers.get(method)
        if handler is None:
            return await super().query(method, params)
        out = handler(params)
        if inspect.isawaitable(out):
            out = await out
        return out
