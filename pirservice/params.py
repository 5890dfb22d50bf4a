"""Fixed encryption parameters used by the SE (labeled PSI) protocol."""

from __future__ import annotations

import copy
from typing import Any, Mapping

from .types import PirError

_TABLE_PARAMS = {
    "hash_func_count": 3,
    "table_size": 512,
    "max_items_per_bin": 92,
}
_ITEM_PARAMS = {"felts_per_item": 8}
_SEAL_PARAMS = {
    "plain_modulus": 40961,
    "poly_modulus_degree": 4096,
    "coeff_modulus_bits": [49, 40, 20],
}

_SERVER_PARAMS: dict[str, Any] = {
    "table_params": _TABLE_PARAMS,
    "item_params": _ITEM_PARAMS,
    "query_params": {
        "ps_low_degree": 0,
        "query_powers": [3, 4, 5, 8, 14, 20, 26, 32, 38, 41, 42, 43, 45, 46],
    },
    "seal_params": _SEAL_PARAMS,
}

_CLIENT_PARAMS: dict[str, Any] = {
    "table_params": _TABLE_PARAMS,
    "item_params": _ITEM_PARAMS,
    "query_params": {
        "ps_low_degree": 0,
        "query_powers": [1, 4, 5, 15, 18, 27, 34],
    },
    "seal_params": _SEAL_PARAMS,
}


def server_params() -> dict[str, Any]:
    """Return a fresh copy of the parameters used for server-side queries."""
    return copy.deepcopy(_SERVER_PARAMS)


def client_params() -> dict[str, Any]:
    """Return a fresh copy of the parameters used by the querying client."""
    return copy.deepcopy(_CLIENT_PARAMS)


def query_batch_size(params: Mapping[str, Any]) -> int:
    """Largest number of items per query batch.

    A batch times 1.2 must not exceed the table size of the parameters.
    """
    try:
        table_size = int(params["table_params"]["table_size"])
    except (KeyError, TypeError, ValueError) as exc:
        raise PirError("parameters carry no usable table_params.table_size") from exc
    size = table_size * 10 // 12
    if size <= 0:
        raise PirError(f"table size {table_size} is too small for a query batch")
    return size