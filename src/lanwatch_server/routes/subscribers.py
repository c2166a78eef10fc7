from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..deps import get_db
from ..models.subscriber import Subscriber
from ..schemas import SubscriberIn, SubscriberOut

# People who get a push notification for every alert.
router = APIRouter(prefix="/api/subscribers", tags=["subscribers"])


@router.post("", response_model=SubscriberOut, status_code=status.HTTP_201_CREATED)
def add_subscriber(payload: SubscriberIn, db: Session = Depends(get_db)):
    try:
        subscriber = Subscriber(name=payload.name, tokens=list(dict.fromkeys(payload.tokens)))
        db.add(subscriber)
        db.commit()
        db.refresh(subscriber)
        return subscriber
    except SQLAlchemyError as e:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save subscriber to database",
        ) from e


@router.get("", response_model=List[SubscriberOut])
def list_subscribers(db: Session = Depends(get_db)):
    return db.query(Subscriber).order_by(Subscriber.name).all()
