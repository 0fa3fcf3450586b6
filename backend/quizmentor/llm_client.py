from __future__ import annotations
import httpx
import logging
from typing import Any, Dict, List, Optional
from .settings import settings

logger = logging.getLogger(__name__)


class LLMError(RuntimeError):
	def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
		super().__init__(message)
		self.status_code = status_code


class LLMRateLimitError(LLMError):
	pass


class LLMCreditsExhaustedError(LLMError):
	pass


class LLMClient:
	"""Chat-completions client for the AI gateway, with an optional OpenRouter fallback."""

	def __init__(
		self,
		api_key: Optional[str] = None,
		*,
		base_url: Optional[str] = None,
		model: Optional[str] = None,
		timeout: float = 30,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.api_key = api_key or settings.ai_gateway_api_key
		if not self.api_key:
			raise ValueError("AI_GATEWAY_API_KEY is not configured")
		self.model = model or settings.ai_gateway_model
		self.base_url = base_url or settings.ai_gateway_url
		self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
		self._fallback_client: Optional[httpx.AsyncClient] = None
		self._fallback_enabled = bool(settings.openrouter_api_key)
		self._openrouter_api_key = settings.openrouter_api_key
		self._openrouter_model = settings.openrouter_model
		self._openrouter_base_url = settings.openrouter_base_url
		self._openrouter_headers = {
			"Authorization": f"Bearer {self._openrouter_api_key}" if self._openrouter_api_key else "",
			"Content-Type": "application/json",
			"HTTP-Referer": settings.openrouter_referer,
			"X-Title": settings.openrouter_title,
		}
		if self._fallback_enabled:
			self._fallback_client = httpx.AsyncClient(timeout=timeout, transport=transport)

	async def complete(self, system: str, user: str, *, temperature: Optional[float] = None) -> str:
		messages = [
			{"role": "system", "content": system},
			{"role": "user", "content": user},
		]
		payload: Dict[str, Any] = {
			"model": self.model,
			"messages": messages,
			"temperature": settings.ai_temperature if temperature is None else temperature,
		}
		headers = {
			"Authorization": f"Bearer {self.api_key}",
			"Content-Type": "application/json",
		}
		last_error: Optional[LLMError] = None
		try:
			r = await self._client.post(self.base_url, headers=headers, json=payload)
			r.raise_for_status()
		except httpx.HTTPStatusError as http_err:
			last_error = _status_error(http_err.response)
			# Quota problems are not the primary model's fault; do not mask them with the fallback
			if isinstance(last_error, (LLMRateLimitError, LLMCreditsExhaustedError)):
				raise last_error from http_err
		except httpx.RequestError as net_err:
			last_error = LLMError(f"AI gateway request failed: {net_err}")
		if last_error is None:
			try:
				return _message_text(r.json())
			except Exception:
				last_error = LLMError(f"Unexpected AI gateway response: {r.text[:500]}")
		if not self._fallback_enabled:
			raise last_error
		logger.warning("AI gateway failed (%s); trying OpenRouter", last_error)
		return await self._fallback_complete(messages, payload["temperature"], last_error)

	async def aclose(self) -> None:
		await self._client.aclose()
		if self._fallback_client is not None:
			await self._fallback_client.aclose()

	async def _fallback_complete(self, messages: List[Dict[str, str]], temperature: float, primary_error: LLMError) -> str:
		if not self._fallback_client or not self._openrouter_api_key:
			raise primary_error
		headers = {k: v for k, v in self._openrouter_headers.items() if v}
		payload: Dict[str, Any] = {
			"model": self._openrouter_model,
			"messages": messages,
			"temperature": temperature,
		}
		try:
			r = await self._fallback_client.post(
				self._openrouter_base_url,
				headers=headers,
				json=payload,
			)
			r.raise_for_status()
			return _message_text(r.json())
		except Exception as fallback_err:
			raise LLMError(
				f"AI gateway call failed ({primary_error}); fallback via OpenRouter also failed"
			) from fallback_err


def _status_error(response: httpx.Response) -> LLMError:
	if response.status_code == 429:
		return LLMRateLimitError("Rate limit exceeded. Please try again later.", status_code=429)
	if response.status_code == 402:
		return LLMCreditsExhaustedError("AI credits exhausted. Please add credits.", status_code=402)
	return LLMError(f"AI gateway error: {response.status_code}", status_code=response.status_code)


def _message_text(data: Dict[str, Any]) -> str:
	content = data["choices"][0]["message"]["content"]
	if not isinstance(content, str) or not content.strip():
		raise ValueError("No content in AI response")
	return content
