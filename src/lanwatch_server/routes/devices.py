from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError

from ..config import Settings
from ..deps import get_settings, get_store
from ..schemas import DeviceCreate, DeviceMergeIn, DeviceOut, DeviceStatus, SimulateDownOut
from ..store import (
    ADMIN,
    EDGE,
    DeviceStore,
    FieldOwnershipError,
    InvalidDocument,
    VersionConflict,
)

# Device records, written by edge agents (PATCH) and administrators (POST).
# Prefix: /api/devices
router = APIRouter(prefix="/api/devices", tags=["devices"])

# How far past the offline threshold simulate-down pushes last_seen_at.
SIMULATED_SILENCE = timedelta(minutes=5)


def _write(store: DeviceStore, device_id: str, fields: dict, writer: str) -> dict:
    try:
        return store.merge_set(device_id, fields, writer=writer)
    except FieldOwnershipError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    except VersionConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except InvalidDocument as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except SQLAlchemyError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save device to database",
        ) from e


@router.get("", response_model=List[DeviceOut])
def list_devices(
    device_status: Optional[DeviceStatus] = Query(None, alias="status"),
    store: DeviceStore = Depends(get_store),
):
    """
    List all devices, optionally only those with the given status
    (`?status=offline`).
    """
    try:
        return store.all(status=device_status.value if device_status else None)
    except SQLAlchemyError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve devices from database",
        ) from e


@router.get("/{device_id}", response_model=DeviceOut)
def get_device(device_id: str, store: DeviceStore = Depends(get_store)):
    doc = store.get(device_id)
    if doc is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Device {device_id} not found")
    return doc


@router.patch("/{device_id}", response_model=DeviceOut)
def merge_device(device_id: str, payload: DeviceMergeIn, store: DeviceStore = Depends(get_store)):
    """
    Merge-write from an edge agent.

    Omitted and null fields are left untouched; the record is created on the
    first write. The returned document already reflects the auditor's reaction.
    """
    _write(store, device_id, payload.model_dump(exclude_none=True), writer=EDGE)
    return store.get(device_id)


@router.post("", response_model=DeviceOut, status_code=status.HTTP_201_CREATED)
def create_device(payload: DeviceCreate, store: DeviceStore = Depends(get_store)):
    """
    Insert a device directly, without an edge agent having seen it.

    The auditor stamps first_seen_at and marks it online.
    """
    if store.get(payload.device_id) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Device {payload.device_id} already exists")
    fields = payload.model_dump(exclude_none=True, exclude={"device_id"})
    _write(store, payload.device_id, fields, writer=ADMIN)
    return store.get(payload.device_id)


@router.post("/{device_id}/simulate-down", response_model=SimulateDownOut)
def simulate_down(
    device_id: str,
    store: DeviceStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """
    Demo helper: pretend the device has been silent well past the offline
    threshold. It is marked online so the auditor sees the flip and alerts.
    """
    if store.get(device_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Device {device_id} not found")

    silent_since = (
        datetime.now(timezone.utc)
        - SIMULATED_SILENCE
        - timedelta(milliseconds=settings.offline_threshold_ms)
    )
    try:
        store.merge_set(
            device_id,
            {"last_seen_at": silent_since, "status": DeviceStatus.ONLINE.value},
            writer=ADMIN,
        )
    except (InvalidDocument, VersionConflict) as e:
        # InvalidDocument: first_seen_at is newer than the simulated silence.
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except SQLAlchemyError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save device to database",
        ) from e

    return SimulateDownOut(
        status="success",
        message=f"Simulation for device {device_id} initiated. Check alerts.",
        device=store.get(device_id),
    )
