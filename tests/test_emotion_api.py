import os
import sys
import unittest
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from emotion_api import create_app
from emotion_stats import DAY_MS, EMOTIONS, HOUR_MS, EmotionObservation, EmotionStatsEngine
from emotion_store import InMemoryEmotionStore, StorageError

NOW = 1_700_000_000_000


def zero_counts(**counts):
    return {label: counts.get(label, 0) for label in EMOTIONS}


class TestEmotionApi(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryEmotionStore()
        self.engine = EmotionStatsEngine(self.store, clock=lambda: NOW)
        self.client = TestClient(create_app(engine=self.engine))

    def test_post_emotion_returns_stored_record(self):
        response = self.client.post("/emotions", json={"emotion": "happy", "userId": "u1", "confidence": 0.7})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json(), {
            "emotion": "happy",
            "timestamp": NOW,
            "confidence": 0.7,
            "userId": "u1",
            "source": "api",
        })
        self.assertEqual(len(self.store), 1)

    def test_post_invalid_emotion_is_rejected(self):
        response = self.client.post("/emotions", json={"emotion": "ecstatic"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("ecstatic", response.json()["detail"])
        self.assertEqual(len(self.store), 0)

    def test_post_confidence_out_of_range_is_rejected(self):
        for confidence in (5.0, -0.5):
            with self.subTest(confidence=confidence):
                response = self.client.post("/emotions", json={"emotion": "happy", "confidence": confidence})
                self.assertEqual(response.status_code, 400)
                self.assertIn("confidence", response.json()["detail"])
        self.assertEqual(len(self.store), 0)

    def test_post_nan_confidence_is_rejected_before_saving(self):
        response = self.client.post(
            "/emotions",
            content='{"emotion": "sad", "confidence": NaN}',
            headers={"Content-Type": "application/json"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("confidence", response.json()["detail"])
        self.assertEqual(len(self.store), 0)

    def test_post_without_emotion_is_rejected(self):
        response = self.client.post("/emotions", json={"userId": "u1"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("emotion", response.json()["detail"])
        self.assertEqual(len(self.store), 0)

    def test_user_stats(self):
        self.store.append(EmotionObservation(emotion="happy", timestamp=NOW - 10 * 60 * 1000, user_id="u1"))
        self.store.append(EmotionObservation(emotion="sad", timestamp=NOW - 2 * HOUR_MS, user_id="u1"))
        self.store.append(EmotionObservation(emotion="angry", timestamp=NOW, user_id="u2"))

        response = self.client.get("/emotions/user/u1")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {
            "lastHour": zero_counts(happy=1),
            "lastDay": zero_counts(happy=1, sad=1),
            "lastWeek": zero_counts(happy=1, sad=1),
            "total": zero_counts(happy=1, sad=1),
        })

    def test_aggregated_stats(self):
        self.store.append(EmotionObservation(emotion="angry", timestamp=NOW, user_id="u2"))
        self.store.append(EmotionObservation(emotion="happy", timestamp=NOW - 8 * DAY_MS, user_id="u1"))

        body = self.client.get("/emotions/aggregated").json()
        self.assertEqual(body["lastWeek"], zero_counts(angry=1))
        self.assertEqual(body["total"], zero_counts(angry=1, happy=1))

    def test_aggregated_stats_on_empty_log(self):
        response = self.client.get("/emotions/aggregated")
        self.assertEqual(response.status_code, 200)
        for window in ("lastHour", "lastDay", "lastWeek", "total"):
            self.assertEqual(response.json()[window], zero_counts())

    def test_percentages(self):
        self.store.append(EmotionObservation(emotion="happy", timestamp=NOW))
        self.store.append(EmotionObservation(emotion="sad", timestamp=NOW))

        response = self.client.get("/emotions/percentages", params={"window": "lastHour"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["happy"], 50.0)
        self.assertEqual(response.json()["neutral"], 0.0)

        response = self.client.get("/emotions/percentages", params={"window": "fortnight"})
        self.assertEqual(response.status_code, 400)

    def test_clear(self):
        self.store.append(EmotionObservation(emotion="happy", timestamp=NOW))
        response = self.client.delete("/emotions")
        self.assertEqual(response.status_code, 204)
        self.assertEqual(self.client.get("/emotions/aggregated").json()["total"], zero_counts())


class TestEmotionApiStorageFailures(unittest.TestCase):
    def setUp(self):
        store = MagicMock()
        store.append.side_effect = StorageError("disk full")
        store.read_all.side_effect = StorageError("disk gone")
        store.clear.side_effect = StorageError("read only")
        self.client = TestClient(create_app(engine=EmotionStatsEngine(store, clock=lambda: NOW)))

    def test_save_failure_returns_500(self):
        with self.assertLogs("emotion_api", level="ERROR"):
            response = self.client.post("/emotions", json={"emotion": "happy"})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"detail": "Error saving emotion statistics"})

    def test_read_failures_return_500(self):
        with self.assertLogs("emotion_api", level="ERROR"):
            self.assertEqual(self.client.get("/emotions/user/u1").status_code, 500)
            self.assertEqual(self.client.get("/emotions/aggregated").status_code, 500)
            self.assertEqual(self.client.get("/emotions/percentages").status_code, 500)

    def test_clear_failure_returns_500(self):
        with self.assertLogs("emotion_api", level="ERROR"):
            self.assertEqual(self.client.delete("/emotions").status_code, 500)


if __name__ == '__main__':
    unittest.main()
