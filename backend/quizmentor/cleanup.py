from __future__ import annotations
from datetime import datetime, timedelta
from sqlalchemy import delete
from sqlalchemy.orm import Session

from .models import AuthSession


def purge_inactive_auth_sessions(db: Session, max_age: timedelta = timedelta(days=7)) -> int:
	threshold = datetime.utcnow() - max_age
	res = db.execute(delete(AuthSession).where(AuthSession.last_activity_at < threshold))
	db.commit()
	return res.rowcount or 0
