from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from coursebot.core.config import settings
from coursebot.core.errors import LearnerBusyError
from coursebot.core.redis_client import get_redis
from coursebot.core.security import require_webhook_secret
from coursebot.db.session import get_db
from coursebot.schemas.telegram import Update
from coursebot.services.bot import BotDispatcher
from coursebot.services.channel import Channel, TelegramChannel

router = APIRouter(prefix="/telegram", tags=["telegram"])


def get_channel() -> Channel:
    return TelegramChannel.from_settings()


@router.post("/webhook", dependencies=[Depends(require_webhook_secret)])
def webhook(
    update: Update,
    db: Session = Depends(get_db),
    channel: Channel = Depends(get_channel),
):
    dispatcher = BotDispatcher(db, channel, get_redis(), lock_wait_seconds=settings.learner_lock_wait_seconds)
    try:
        status = dispatcher.dispatch(update)
    except LearnerBusyError as e:
        # Telegram redelivers on non-2xx; the update has not been claimed yet.
        raise HTTPException(status_code=503, detail="learner busy") from e
    return {"ok": True, "status": status}
