from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, Integer, Float, Text
from .db import Base


def _uuid_hex() -> str:
	return uuid.uuid4().hex


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	email = Column(String(256), nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# jti of the issued access token
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), index=True, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PrelimsQuestion(Base):
	"""Static question bank row. Options are stored one column per label."""
	__tablename__ = "prelims_questions"
	id = Column(String(64), primary_key=True, default=_uuid_hex)
	question = Column(Text, nullable=False)
	option_a = Column(Text, nullable=False)
	option_b = Column(Text, nullable=False)
	option_c = Column(Text, nullable=False)
	option_d = Column(Text, nullable=False)
	correct_answer = Column(String(1), nullable=False)
	explanation = Column(Text, nullable=True)
	subject = Column(String(128), index=True, nullable=False)
	topic = Column(String(256), nullable=True)
	# "Level 1" .. "Level 5"
	difficulty = Column(String(32), index=True, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PrelimsAttempt(Base):
	__tablename__ = "prelims_attempts"
	id = Column(String(64), primary_key=True, default=_uuid_hex)
	user_id = Column(String(128), index=True, nullable=False)
	session_id = Column(String(64), index=True, nullable=True)
	# Generated questions are not in the bank, so no foreign key here
	question_id = Column(String(128), nullable=False)
	selected_answer = Column(String(1), nullable=False)
	is_correct = Column(Boolean, nullable=False)
	level = Column(Integer, nullable=True)
	time_taken_seconds = Column(Float, nullable=True)
	attempted_at = Column(DateTime, default=datetime.utcnow, nullable=False)
