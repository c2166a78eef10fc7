from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..deps import get_db
from ..models.alert import Alert
from ..schemas import AlertOut

# Alerts are only created by the backend (one per device status transition).
# Prefix: /api/alerts
# Tags: alerts (for OpenAPI grouping)
router = APIRouter(prefix="/api/alerts", tags=["alerts"])


@router.get("")
def list_alerts(
    device_id: Optional[str] = None,
    acknowledged: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    """
    List alerts, newest first, with optional filters on device and
    acknowledgement.
    """
    try:
        query = db.query(Alert)
        if device_id is not None:
            query = query.filter(Alert.device_id == device_id)
        if acknowledged is not None:
            query = query.filter(Alert.acknowledged == acknowledged)
        alerts = query.order_by(Alert.created_at.desc()).all()
        return {"alerts": [AlertOut.model_validate(alert) for alert in alerts]}
    except SQLAlchemyError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve alerts from database",
        ) from e


@router.post("/{alert_id}/ack", response_model=AlertOut)
def acknowledge_alert(alert_id: str, db: Session = Depends(get_db)):
    """Mark an alert as acknowledged. Acknowledging twice is harmless."""
    alert = db.get(Alert, alert_id)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Alert {alert_id} not found")
    try:
        alert.acknowledged = True
        db.commit()
        db.refresh(alert)
        return alert
    except SQLAlchemyError as e:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update alert",
        ) from e
