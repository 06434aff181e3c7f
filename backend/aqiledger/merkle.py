"""Binary Merkle tree over the raw values of one hourly batch.

Leaves are SHA-256 digests of ``sensor_type:value:timestamp:index``. The leaf
list is padded to a power of two by repeating the last leaf, and every
internal node hashes its two children in sorted byte order, so a proof is
just the list of sibling digests from the leaf level upwards.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Sequence

from .errors import EmptyBatchError
from .sensors import ordered_sensor_types


def format_value(value: float) -> str:
    """Render a number the way a JSON serialiser would (``100`` not ``100.0``)."""

    number = float(value)
    if number.is_integer() and abs(number) < 1e21:
        return str(int(number))
    return repr(number)


def format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def leaf_hash(sensor_type: str, value: float, timestamp: datetime, index: int) -> str:
    data = f"{sensor_type}:{format_value(value)}:{format_timestamp(timestamp)}:{index}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def hash_pair(left: bytes, right: bytes) -> bytes:
    if right < left:
        left, right = right, left
    return hashlib.sha256(left + right).digest()


def tree_depth(leaf_count: int) -> int:
    if leaf_count <= 1:
        return 0
    return math.ceil(math.log2(leaf_count))


def flatten_leaves(sensor_data: Mapping[str, Sequence[float]], timestamp: datetime) -> list[str]:
    leaves: list[str] = []
    index = 0
    for sensor_type in ordered_sensor_types(sensor_data.keys()):
        values = sensor_data[sensor_type]
        if not isinstance(values, (list, tuple)):
            continue
        for value in values:
            leaves.append(leaf_hash(sensor_type, value, timestamp, index))
            index += 1
    return leaves


@dataclass
class MerkleTree:
    leaves: list[str]
    leaf_count: int
    layers: list[list[bytes]] = field(repr=False)

    @property
    def root(self) -> str:
        return self.layers[-1][0].hex()

    @property
    def depth(self) -> int:
        return len(self.layers) - 1

    def proof(self, leaf_index: int) -> list[str]:
        """Sibling digests for *leaf_index*, leaf level first."""

        if leaf_index < 0 or leaf_index >= len(self.leaves):
            raise IndexError(f"Leaf index {leaf_index} out of bounds")

        path: list[str] = []
        index = leaf_index
        for layer in self.layers[:-1]:
            path.append(layer[index ^ 1].hex())
            index //= 2
        return path


def build_tree_from_leaves(leaves: Sequence[str]) -> MerkleTree:
    if not leaves:
        raise EmptyBatchError("No sensor data to build Merkle tree")

    padded = list(leaves)
    target = 1 << tree_depth(len(padded))
    while len(padded) < target:
        padded.append(padded[-1])

    layer = [bytes.fromhex(leaf) for leaf in padded]
    layers = [layer]
    while len(layer) > 1:
        layer = [hash_pair(layer[i], layer[i + 1]) for i in range(0, len(layer), 2)]
        layers.append(layer)

    return MerkleTree(leaves=padded, leaf_count=len(leaves), layers=layers)


def build_tree(sensor_data: Mapping[str, Sequence[float]], timestamp: datetime) -> MerkleTree:
    """Build the batch tree; every leaf is stamped with the batch *timestamp*."""

    return build_tree_from_leaves(flatten_leaves(sensor_data, timestamp))


def verify(leaf: str, proof: Sequence[str], root: str) -> bool:
    try:
        computed = bytes.fromhex(leaf)
        for sibling in proof:
            computed = hash_pair(computed, bytes.fromhex(sibling))
        return computed == bytes.fromhex(root)
    except (TypeError, ValueError):
        return False
