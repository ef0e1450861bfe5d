"""HTTP API for recording emotions and reading windowed statistics."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from emotion_stats import (
	EmotionObservation,
	EmotionStatsEngine,
	InvalidConfidenceError,
	InvalidLabelError,
	InvalidWindowError,
)
from emotion_store import StorageError, open_store
from tracker_config import TrackerConfig, configure_logging, load_config


logger = logging.getLogger(__name__)


class EmotionIn(BaseModel):
	emotion: str
	userId: Optional[str] = None
	confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0, allow_inf_nan=False)


def _record_payload(observation: EmotionObservation) -> Dict[str, Any]:
	return {
		"emotion": observation.emotion.value,
		"timestamp": observation.timestamp,
		"confidence": observation.confidence,
		"userId": observation.user_id,
		"source": observation.source,
	}


def _validation_message(exc: RequestValidationError) -> str:
	# Rejected input is left out; NaN is not valid JSON in a response
	return "; ".join(
		f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
	)


def _storage_failure(message: str) -> JSONResponse:
	logger.exception(message)
	return JSONResponse(status_code=500, content={"detail": message})


def create_app(engine: Optional[EmotionStatsEngine] = None, config: Optional[TrackerConfig] = None) -> FastAPI:
	"""Build the API around ``engine``, or around the store ``config`` selects."""

	if engine is None:
		config = config or load_config()
		engine = EmotionStatsEngine(open_store(config))

	app = FastAPI(title="Mood Tracker API")
	app.state.engine = engine

	@app.exception_handler(RequestValidationError)
	async def invalid_request(request: Request, exc: RequestValidationError):
		return JSONResponse(status_code=400, content={"detail": _validation_message(exc)})

	@app.post("/emotions", status_code=201)
	def save_emotion(payload: EmotionIn):
		try:
			observation = engine.record_emotion(
				payload.emotion,
				confidence=payload.confidence,
				user_id=payload.userId,
				source="api",
			)
		except (InvalidLabelError, InvalidConfidenceError) as exc:
			raise HTTPException(status_code=400, detail=str(exc)) from exc
		except StorageError:
			return _storage_failure("Error saving emotion statistics")
		return _record_payload(observation)

	@app.get("/emotions/user/{user_id}")
	def get_user_stats(user_id: str):
		try:
			return engine.windowed_counts(user_id=user_id).to_dict()
		except StorageError:
			return _storage_failure("Error retrieving emotion statistics")

	@app.get("/emotions/aggregated")
	def get_aggregated_stats():
		try:
			return engine.windowed_counts().to_dict()
		except StorageError:
			return _storage_failure("Error retrieving aggregated emotion statistics")

	@app.get("/emotions/percentages")
	def get_percentages(window: str = "total", userId: Optional[str] = None):
		try:
			return engine.percentages(window, user_id=userId)
		except InvalidWindowError as exc:
			raise HTTPException(status_code=400, detail=str(exc)) from exc
		except StorageError:
			return _storage_failure("Error retrieving emotion percentages")

	@app.delete("/emotions", status_code=204)
	def clear_emotions():
		try:
			engine.clear()
		except StorageError:
			return _storage_failure("Error clearing emotion statistics")
		return Response(status_code=204)

	return app


def main() -> None:
	import uvicorn

	config = load_config()
	configure_logging(config.log_level)
	uvicorn.run(create_app(config=config), host="127.0.0.1", port=8000)


if __name__ == "__main__":
	main()
