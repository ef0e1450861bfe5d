"""Streamlit entry point for the AI Mood Tracker dashboard."""

from __future__ import annotations

from datetime import datetime, timezone
import io
from typing import Optional, Tuple

try:
	import cv2
	_HAS_CV2 = True
	_CV2_ERROR = None
except Exception as _cv_err:  # pragma: no cover - optional runtime dependency
	cv2 = None
	_HAS_CV2 = False
	_CV2_ERROR = str(_cv_err)

import numpy as np
from PIL import Image
import streamlit as st

from emotion_detector import (
	CameraUnavailableError,
	EmotionAnalyzer,
	EmotionResult,
	capture_latest,
	confirm_observation,
	open_camera,
	_HAS_DEEPFACE,
	_HAS_FER,
	_DEEPFACE_ERROR,
	_FER_ERROR,
)
from emotion_stats import EMOTIONS, EmotionStatsEngine, Window, compute_percentages, now_ms, save_distribution_chart
from emotion_store import StorageError, open_store
from tracker_config import TrackerConfig, configure_logging, load_config
from usage_limit import UsageLimiter


WINDOW_TITLES = {
	Window.LAST_HOUR: "Last Hour",
	Window.LAST_DAY: "Last 24 Hours",
	Window.LAST_WEEK: "Last 7 Days",
	Window.TOTAL: "All Time",
}

EMOTION_EMOJI = {
	"happy": "😊",
	"sad": "😢",
	"angry": "😠",
	"fearful": "😨",
	"disgusted": "🤢",
	"surprised": "😲",
	"neutral": "😐",
}


st.set_page_config(
	page_title="AI Mood Tracker",
	page_icon="😊",
	layout="wide",
)


@st.cache_resource
def get_config() -> TrackerConfig:
	config = load_config()
	configure_logging(config.log_level)
	return config


@st.cache_resource
def get_analyzer(detector_backend: str) -> EmotionAnalyzer:
	"""Load and cache the emotion analyzer."""
	try:
		return EmotionAnalyzer(detector_backend=detector_backend)
	except ImportError as exc:
		st.error("No emotion detection backend available.")
		st.error(str(exc))
		st.info("Try installing: `pip install deepface fer`")
		st.stop()


@st.cache_resource
def get_persistent_engine(storage_backend: str, _config: TrackerConfig) -> EmotionStatsEngine:
	return EmotionStatsEngine(open_store(_config))


def get_engine(config: TrackerConfig) -> EmotionStatsEngine:
	"""Session storage lives in the browser session; persistent storage is shared."""
	if config.storage_backend == "memory":
		if "session_engine" not in st.session_state:
			st.session_state["session_engine"] = EmotionStatsEngine(open_store(config))
		return st.session_state["session_engine"]
	return get_persistent_engine(config.storage_backend, config)


def get_usage_limiter(config: TrackerConfig) -> UsageLimiter:
	if "usage_limiter" not in st.session_state:
		st.session_state["usage_limiter"] = UsageLimiter(limit=config.usage_limit)
	return st.session_state["usage_limiter"]


def analyze_image(image_data, analyzer: EmotionAnalyzer) -> Optional[EmotionResult]:
	"""Analyze emotion from uploaded/captured image."""
	try:
		if isinstance(image_data, Image.Image):
			img = np.array(image_data.convert("RGB"))
		else:
			img = np.array(Image.open(io.BytesIO(image_data.getvalue())).convert("RGB"))

		# Backends expect BGR. Prefer cv2 if available.
		if _HAS_CV2:
			img_bgr = cv2.cvtColor(img, cv2.COLOR_RGB2BGR)
		else:
			img_bgr = img[:, :, ::-1]

		return analyzer.analyze(img_bgr)
	except Exception as e:
		st.error(f"Error analyzing image: {e}")
		return None


def draw_emotion_overlay(image: Image.Image, result: EmotionResult) -> Image.Image:
	"""Draw emotion label on image."""
	img_array = np.array(image.convert("RGB"))

	text = f"{result.dominant_emotion.value}: {result.confidence * 100:.1f}%"
	if _HAS_CV2:
		img_bgr = cv2.cvtColor(img_array, cv2.COLOR_RGB2BGR)
		cv2.putText(
			img_bgr,
			text,
			(10, 30),
			cv2.FONT_HERSHEY_SIMPLEX,
			1.0,
			(0, 255, 0),
			2,
		)
		img_rgb = cv2.cvtColor(img_bgr, cv2.COLOR_BGR2RGB)
		return Image.fromarray(img_rgb)
	else:
		from PIL import ImageDraw, ImageFont

		pil_img = Image.fromarray(img_array)
		draw = ImageDraw.Draw(pil_img)
		try:
			font = ImageFont.load_default()
		except Exception:
			font = None
		draw.text((10, 10), text, fill=(0, 255, 0), font=font)
		return pil_img


def render_sidebar(config: TrackerConfig) -> TrackerConfig:
	with st.sidebar:
		st.markdown("### Backend Status")
		if _HAS_DEEPFACE:
			st.success("DeepFace available")
		else:
			st.warning("DeepFace unavailable")
			if _DEEPFACE_ERROR:
				with st.expander("Error details"):
					st.code(_DEEPFACE_ERROR[:200])

		if _HAS_FER:
			st.success("FER available")
		else:
			st.warning("FER unavailable")
			if _FER_ERROR:
				with st.expander("Error details"):
					st.code(_FER_ERROR[:200])

		if not _HAS_DEEPFACE and not _HAS_FER:
			st.error("No emotion backend available!")
			st.stop()

		st.markdown("### Data Storage")
		if config.storage_backend in ("csv", "memory"):
			policy = st.radio(
				"Storage policy",
				options=["persistent", "session"],
				index=0 if config.storage_backend == "csv" else 1,
				help="Persistent storage keeps history between sessions.",
			)
			config = config.with_storage_policy(policy)
		else:
			st.caption(f"Storage backend: {config.storage_backend}")

		confirm_clear = st.checkbox("I understand clearing cannot be undone")
		if st.button("Clear all emotion data", disabled=not confirm_clear):
			try:
				get_engine(config).clear()
				st.success("All emotion data cleared.")
			except StorageError:
				st.error("Could not clear statistics. Please try again.")

	return config


def capture_photo(analyzer: EmotionAnalyzer) -> Tuple[bool, Optional[EmotionResult]]:
	"""Analyze a single browser snapshot; returns (captured, result)."""

	camera_photo = st.camera_input("Take a photo to analyze your emotion")
	if camera_photo is None:
		return False, None

	with st.spinner("Analyzing emotion..."):
		result = analyze_image(camera_photo, analyzer)

	img = Image.open(camera_photo)
	if result:
		st.image(
			draw_emotion_overlay(img, result),
			caption=f"Detected: {result.dominant_emotion.value} ({result.confidence * 100:.1f}%)",
			use_container_width=True,
		)
	else:
		st.image(img, use_container_width=True)
		st.warning("No face detected. Pick how you feel below or try again with better lighting.")
	return True, result


def capture_live(analyzer: EmotionAnalyzer, config: TrackerConfig) -> Tuple[bool, Optional[EmotionResult]]:
	"""Poll the local camera for ``config.capture_seconds`` and keep the last detection."""

	st.caption(
		f"Samples the camera every {config.detection_interval_ms} ms "
		f"for {config.capture_seconds:g} seconds."
	)
	if st.button("Start capture"):
		with st.spinner("Watching for your expression..."):
			try:
				with open_camera() as frame_source:
					st.session_state["live_result"] = capture_latest(
						frame_source,
						analyzer,
						duration_s=config.capture_seconds,
						interval_ms=config.detection_interval_ms,
					)
			except CameraUnavailableError as exc:
				st.error(str(exc))
				return False, None
		st.session_state["live_captured"] = True

	if not st.session_state.get("live_captured"):
		return False, None

	result = st.session_state.get("live_result")
	if result:
		st.info(f"Detected: {EMOTION_EMOJI[result.dominant_emotion.value]} {result.dominant_emotion.value} ({result.confidence * 100:.1f}%)")
	else:
		st.warning("No face detected. Pick how you feel below or capture again.")
	return True, result


def render_capture(
	engine: EmotionStatsEngine,
	analyzer: EmotionAnalyzer,
	limiter: UsageLimiter,
	config: TrackerConfig,
) -> None:
	st.subheader("Camera Input")

	mode = st.radio("Capture mode", ["Photo", "Live camera"], horizontal=True)
	if mode == "Photo":
		captured, result = capture_photo(analyzer)
	else:
		captured, result = capture_live(analyzer, config)
	if not captured:
		return

	options = ["(use detected emotion)"] + [f"{EMOTION_EMOJI[label]} {label}" for label in EMOTIONS]
	choice = st.selectbox("Feeling different? Select your emotion", options)
	selected = None if choice == options[0] else choice.split(" ", 1)[1]

	now = now_ms()
	if not limiter.can_use(now):
		st.warning(f"You've used the tracker {limiter.limit} times. Please try again in 1 hour.")
		return

	if st.button("Confirm", type="primary"):
		observation = confirm_observation(result, selected)
		if observation is None:
			st.info("Nothing to confirm yet.")
			return
		try:
			engine.record(observation)
		except StorageError:
			st.error("Could not save statistics. Please try again.")
			return
		limiter.register_use(now)
		st.session_state.pop("live_captured", None)
		st.session_state.pop("live_result", None)
		st.success(f"Logged: **{observation.emotion.value}**")


def render_statistics(engine: EmotionStatsEngine, config: TrackerConfig) -> None:
	st.subheader("Emotion Statistics")

	now = now_ms()
	try:
		counts = engine.windowed_counts(now)
	except StorageError:
		st.error("Could not load statistics.")
		return

	tabs = st.tabs([WINDOW_TITLES[window] for window in Window])
	for tab, window in zip(tabs, Window):
		with tab:
			window_counts = counts[window]
			total = sum(window_counts.values())
			if total == 0:
				st.info("No emotions recorded in this period.")
				continue

			st.metric("Recorded emotions", total)
			percentages = compute_percentages(window_counts)
			ranked = sorted(percentages.items(), key=lambda item: item[1], reverse=True)
			for emotion, pct in ranked:
				st.progress(
					pct / 100,
					text=f"{EMOTION_EMOJI[emotion]} {emotion}: {pct:.1f}% ({window_counts[emotion]})",
				)

			if window is Window.LAST_DAY:
				save_distribution_chart(percentages, config.chart_path, "Mood Distribution (24h)")
				if config.chart_path.exists():
					st.image(str(config.chart_path), use_container_width=True)


def render_today(engine: EmotionStatsEngine) -> None:
	st.subheader("Today's Summary")
	try:
		summary = engine.daily_summary()
	except StorageError:
		st.error("Could not load statistics.")
		return

	if summary.total_scans == 0:
		st.info("No data logged today. Take a photo to get started!")
		return

	st.metric("Total Detections", summary.total_scans)
	st.metric("Dominant Emotion", summary.dominant_emotion)
	if summary.average_confidence is not None:
		st.metric("Average Confidence", f"{summary.average_confidence * 100:.1f}%")


def render_history(engine: EmotionStatsEngine) -> None:
	st.subheader("Emotion History")
	try:
		history = engine.history_by_day()
	except StorageError:
		st.error("Could not load statistics.")
		return

	if not history:
		st.info("No emotion history available yet. Use the camera to build your history.")
		return

	for day, observations in history.items():
		with st.expander(f"{day.isoformat()} ({len(observations)})", expanded=day == datetime.now(timezone.utc).date()):
			for observation in observations:
				confidence = "" if observation.confidence is None else f" ({observation.confidence * 100:.1f}%)"
				st.markdown(
					f"{observation.recorded_at.strftime('%H:%M')} "
					f"{EMOTION_EMOJI[observation.emotion.value]} **{observation.emotion.value}**{confidence}"
				)


def main() -> None:
	st.title("AI Mood Tracker")
	st.markdown("*Detect and track your emotions using AI*")

	config = render_sidebar(get_config())
	analyzer = get_analyzer(config.detector_backend)
	engine = get_engine(config)
	limiter = get_usage_limiter(config)

	col1, col2 = st.columns([2, 1])
	with col1:
		render_capture(engine, analyzer, limiter, config)
	with col2:
		render_today(engine)

	render_statistics(engine, config)
	render_history(engine)

	with st.expander("How to use"):
		st.markdown("""
		1. **Allow Camera Access**: Click the camera button above and allow browser access to your camera
		2. **Take a Photo**: Click the capture button to take a photo, or pick **Live camera** to sample the camera attached to this machine for a few seconds
		3. **Confirm**: Keep the detected emotion or pick your own, then confirm
		4. **Track Progress**: Check the statistics and history to see your mood patterns

		**Note**: No images are stored, only the confirmed emotion and its time.
		""")


if __name__ == "__main__":
	main()
