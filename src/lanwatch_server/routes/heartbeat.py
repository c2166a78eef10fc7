from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..deps import get_db
from ..models.agent import Agent
from ..schemas import HeartbeatIn, HeartbeatOut
from ..store import to_utc

router = APIRouter(prefix="/api/heartbeat", tags=["heartbeat"])


@router.post("", response_model=HeartbeatOut, status_code=status.HTTP_201_CREATED)
def heartbeat(payload: HeartbeatIn, db: Session = Depends(get_db)):
    """
    Upsert edge agent heartbeat info.
    """
    agent = db.get(Agent, payload.agent_id)
    now = to_utc(payload.timestamp).replace(tzinfo=None)
    if agent:
        agent.host = payload.host
        agent.last_active_at = now
    else:
        agent = Agent(
            agent_id=payload.agent_id,
            host=payload.host,
            created_at=now,
            last_active_at=now,
        )
        db.add(agent)
    db.commit()
    db.refresh(agent)
    return {
        "agent_id": agent.agent_id,
        "host": agent.host,
        "last_active_at": to_utc(agent.last_active_at),
        "message": "Server received heartbeat",
    }
