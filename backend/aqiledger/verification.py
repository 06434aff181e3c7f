"""Proof bundle construction for one hourly batch."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .errors import EmptyBatchError, ExternalServiceError
from .hashing import content_hash
from .merkle import build_tree, format_timestamp, tree_depth
from .models import Reading
from .sensors import get_sensor_unit, ordered_sensor_types
from .storage import Pinner

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"
HASH_ALGORITHM = "SHA-256"

PROVENANCE = {
    "data_source": "AQI Ledger IoT Device Network",
    "verification_system": "AQI Ledger Backend v1.0",
    "license": "CC BY 4.0",
    "attribution": "Data collected and verified by AQI Ledger",
}


@dataclass
class VerificationResult:
    success: bool
    merkle_root: str | None = None
    content_hash: str | None = None
    storage_uri: str | None = None
    storage_id: str | None = None
    error: str | None = None


def _sensor_stats(values: list[float]) -> dict[str, float]:
    return {
        "min": min(values),
        "max": max(values),
        "avg": round(sum(values) / len(values), 3),
    }


def build_proof_payload(reading: Reading, merkle_root: str, digest: str = "") -> dict[str, Any]:
    """Structured bundle describing one batch and its Merkle root.

    The bundle is hashed with ``digest`` left empty; the resulting content
    hash is then written back into ``cryptographic_proofs.content_hash``.
    """

    sensor_data: dict[str, Any] = {}
    points: dict[str, int] = {}
    per_sensor: dict[str, Any] = {}
    raw = reading.sensor_data or {}
    for sensor_type in ordered_sensor_types(raw.keys()):
        values = raw[sensor_type]
        if not isinstance(values, list) or not values:
            continue
        sensor_data[sensor_type] = {
            "values": list(values),
            "unit": get_sensor_unit(sensor_type),
            "sensor_type": sensor_type,
        }
        points[sensor_type] = len(values)
        per_sensor[sensor_type] = _sensor_stats(values)

    total = sum(points.values())
    location = reading.location or {}
    window = reading.batch_window

    return {
        "schema_version": SCHEMA_VERSION,
        "data_type": "aqi_sensor_batch",
        "batch_identity": {
            "reading_id": reading.reading_id,
            "device_id": reading.device_id,
            "owner_id": reading.owner_id,
            "batch_window": {
                "start": format_timestamp(window.start),
                "end": format_timestamp(window.end),
                "hour_index": window.hour_index,
                "timezone": "UTC",
            },
        },
        "location_metadata": {
            "city": location.get("city") or "Unknown",
            "city_id": location.get("city_id") or "unknown",
            "station": location.get("station") or "Unknown",
            "station_id": location.get("station_id") or "unknown",
            "coordinates": location.get("coordinates"),
        },
        "sensor_data": sensor_data,
        "statistics": {
            "total_readings": total,
            "ingestion_count": reading.ingestion_count,
            "sensors_monitored": list(sensor_data),
            "data_points_per_sensor": points,
            "per_sensor": per_sensor,
        },
        "cryptographic_proofs": {
            "merkle_root": merkle_root,
            "merkle_tree_depth": tree_depth(total),
            "merkle_leaf_count": total,
            "content_hash": digest,
            "hash_algorithm": HASH_ALGORITHM,
        },
        "timestamps": {
            "first_ingestion": format_timestamp(reading.created_at or window.start),
            "last_ingestion": format_timestamp(reading.last_ingestion or window.start),
            "batch_closed": format_timestamp(window.end),
        },
        "provenance": dict(PROVENANCE),
    }


def compute_proofs(reading: Reading) -> tuple[str, str, dict[str, Any]]:
    """Return ``(merkle_root, content_hash, payload)`` for a reading."""

    tree = build_tree(reading.sensor_data or {}, reading.window_start)
    payload = build_proof_payload(reading, tree.root)
    digest = content_hash(payload)
    payload["cryptographic_proofs"]["content_hash"] = digest
    return tree.root, digest, payload


async def verify_reading(reading: Reading, pinner: Pinner, verified_at: datetime | None = None) -> VerificationResult:
    """Anchor one batch. External failures come back as ``success=False``."""

    try:
        merkle_root, digest, payload = compute_proofs(reading)
        logger.info("Computed proofs for %s: root=%s... hash=%s...", reading.reading_id, merkle_root[:16], digest[:16])

        bundle = copy.deepcopy(payload)
        if verified_at is not None:
            bundle["timestamps"]["verified_at"] = format_timestamp(verified_at)

        pinned = await pinner.pin(
            bundle,
            name=f"aqiledger-{reading.reading_id}",
            tags={
                "reading_id": reading.reading_id,
                "device_id": reading.device_id,
                "hour_index": reading.hour_index,
            },
        )
    except (ExternalServiceError, EmptyBatchError) as exc:
        logger.warning("Verification failed for %s: %s", reading.reading_id, exc)
        return VerificationResult(success=False, error=str(exc))

    return VerificationResult(
        success=True,
        merkle_root=merkle_root,
        content_hash=digest,
        storage_uri=pinned.uri,
        storage_id=pinned.content_id,
    )
