from fastapi import APIRouter

from ..settings import settings

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
	return {
		"status": "ok",
		"question_source": settings.question_source,
		"ai_gateway_configured": bool(settings.ai_gateway_api_key),
	}
