"""
Normalized unit schema (what every ChainDataSource.fetch_unit returns):

    {
        "block_num": int,
        "block_id": str | None,
        "previous": str | None,
        "timestamp": int,            # epoch ms
        "witness": str | None,
        "transactions": [
            {
                "trx_id": str | None,
                "trx_in_block": int,
                "operations": [{"type": "vote", "value": {...}}, ...],
            },
            ...
        ],
    }

Operation types drop the appbase "_operation" suffix, so condenser
(["vote", {...}]) and appbase ({"type": "vote_operation", "value": {...}})
encodings normalize to the same shape.
"""

from __future__ import annotations

from typing import Any, Mapping

from ingestion.contracts.tick import _coerce_epoch_ms


_OP_SUFFIX = "_operation"


def normalize_operation(raw: Any) -> dict[str, Any]:
    if isinstance(raw, Mapping):
        op_type = raw.get("type")
        value = raw.get("value")
    elif isinstance(raw, (list, tuple)) and len(raw) == 2:
        op_type, value = raw
    else:
        raise ValueError(f"unrecognized operation encoding: {type(raw).__name__}")
    if not isinstance(op_type, str) or not op_type:
        raise ValueError(f"operation type must be a non-empty string, got {op_type!r}")
    if op_type.endswith(_OP_SUFFIX):
        op_type = op_type[: -len(_OP_SUFFIX)]
    if not isinstance(value, Mapping):
        raise ValueError(f"operation {op_type!r} value must be a mapping")
    return {"type": op_type, "value": dict(value)}


def _block_num_from_id(block_id: Any) -> int | None:
    # The first 4 bytes of a block id encode the block number.
    if isinstance(block_id, str) and len(block_id) >= 8:
        try:
            return int(block_id[:8], 16)
        except ValueError:
            return None
    return None


class HiveBlockNormalizer:
    """
    Raw Hive block (block_api or condenser_api shape) -> normalized unit.

    Raises ValueError on payloads that cannot be normalized; no inference
    beyond the block number fallback chain (explicit -> block_id -> position).
    """

    def normalize(self, *, raw: Mapping[str, Any], position: int | None = None) -> dict[str, Any]:
        if not isinstance(raw, Mapping):
            raise ValueError(f"block payload must be a mapping, got {type(raw).__name__}")
        block = raw.get("block", raw)
        if not isinstance(block, Mapping):
            raise ValueError("block payload 'block' must be a mapping")

        block_num = block.get("block_num")
        if block_num is None:
            block_num = _block_num_from_id(block.get("block_id"))
        if block_num is None:
            block_num = position
        if block_num is None:
            raise ValueError("cannot determine block number")
        block_num = int(block_num)
        if position is not None and block_num != int(position):
            raise ValueError(f"block number mismatch: asked {position}, got {block_num}")

        if block.get("timestamp") is None:
            raise ValueError(f"block {block_num} has no timestamp")

        trx_ids = list(block.get("transaction_ids") or [])
        transactions = []
        for idx, trx in enumerate(block.get("transactions") or []):
            if not isinstance(trx, Mapping):
                raise ValueError(f"block {block_num} transaction {idx} must be a mapping")
            trx_id = trx.get("transaction_id") or trx.get("trx_id")
            if trx_id is None and idx < len(trx_ids):
                trx_id = trx_ids[idx]
            transactions.append(
                {
                    "trx_id": trx_id,
                    "trx_in_block": idx,
                    "operations": [normalize_operation(op) for op in trx.get("operations") or []],
                }
            )

        return {
            "block_num": block_num,
            "block_id": block.get("block_id"),
            "previous": block.get("previous"),
            "timestamp": _coerce_epoch_ms(block["timestamp"]),
            "witness": block.get("witness"),
            "transactions": transactions,
        }
