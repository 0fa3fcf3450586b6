from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	# OpenAI-compatible chat completions gateway used for question generation
	ai_gateway_api_key: str | None = Field(default=None, validation_alias="AI_GATEWAY_API_KEY")
	ai_gateway_url: str = Field(default="https://ai.gateway.lovable.dev/v1/chat/completions", validation_alias="AI_GATEWAY_URL")
	ai_gateway_model: str = Field(default="google/gemini-3-flash-preview", validation_alias="AI_GATEWAY_MODEL")
	ai_temperature: float = Field(default=0.7, validation_alias="AI_TEMPERATURE")

	# OpenRouter fallback configuration (optional)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="x-ai/grok-4-fast:free", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="Prelims Level Quiz", validation_alias="OPENROUTER_TITLE")

	# Where quiz batches come from: "llm" (generated per request) or "bank" (prelims_questions table)
	question_source: str = Field(default="llm", validation_alias="QUESTION_SOURCE")
	question_timeout_seconds: float = Field(default=45.0, validation_alias="QUESTION_TIMEOUT_SECONDS")
	# In-memory quiz sessions untouched for longer than this are dropped
	session_idle_minutes: int = Field(default=120, validation_alias="SESSION_IDLE_MINUTES")

	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=120, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
