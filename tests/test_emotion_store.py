import os
import sys
import tempfile
import threading
import unittest
from pathlib import Path

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from emotion_stats import DAY_MS, HOUR_MS, EMOTIONS, EmotionObservation, EmotionStatsEngine
from emotion_store import (
    CsvEmotionStore,
    InMemoryEmotionStore,
    SqliteEmotionStore,
    StorageError,
    open_store,
)
from tracker_config import TrackerConfig

NOW = 1_700_000_000_000

SAMPLE = [
    EmotionObservation(emotion="happy", timestamp=NOW - 1000, confidence=0.91, user_id="alice", source="webcam"),
    EmotionObservation(emotion="sad", timestamp=NOW - 2 * HOUR_MS, user_id="bob", source="api"),
    EmotionObservation(emotion="neutral", timestamp=NOW - 3 * DAY_MS),
    EmotionObservation(emotion="surprised", timestamp=NOW - 9 * DAY_MS, confidence=1.0, user_id="42"),
    # Strings pandas would read as missing by default
    EmotionObservation(emotion="angry", timestamp=NOW - 5000, user_id="NA"),
    EmotionObservation(emotion="happy", timestamp=NOW - 6000, user_id="null", source="api"),
    EmotionObservation(emotion="fearful", timestamp=NOW - 7000, user_id="None"),
    EmotionObservation(emotion="disgusted", timestamp=NOW - 8000, user_id="nan"),
    EmotionObservation(emotion="sad", timestamp=NOW - 9000, user_id="N/A"),
]


class StoreContract:
    """Behaviour every store must share; mixed into concrete test cases."""

    def make_store(self):
        raise NotImplementedError

    def test_empty_store_reads_nothing(self):
        self.assertEqual(self.make_store().read_all(), [])

    def test_round_trip_keeps_fields(self):
        store = self.make_store()
        for observation in SAMPLE:
            store.append(observation)
        stored = sorted(store.read_all(), key=lambda o: o.timestamp)
        self.assertEqual(stored, sorted(SAMPLE, key=lambda o: o.timestamp))

    def test_clear_removes_everything(self):
        store = self.make_store()
        for observation in SAMPLE:
            store.append(observation)
        store.clear()
        self.assertEqual(store.read_all(), [])
        store.append(SAMPLE[0])
        self.assertEqual(store.read_all(), [SAMPLE[0]])

    def test_engine_matches_in_memory_results(self):
        reference = InMemoryEmotionStore()
        store = self.make_store()
        for observation in SAMPLE:
            reference.append(observation)
            store.append(observation)

        expected = EmotionStatsEngine(reference, clock=lambda: NOW)
        actual = EmotionStatsEngine(store, clock=lambda: NOW)
        self.assertEqual(actual.windowed_counts().to_dict(), expected.windowed_counts().to_dict())
        self.assertEqual(
            actual.windowed_counts(user_id="alice").to_dict(),
            expected.windowed_counts(user_id="alice").to_dict(),
        )
        self.assertEqual(actual.percentages("lastWeek"), expected.percentages("lastWeek"))
        for user_id in ("NA", "null", "None", "nan", "N/A"):
            with self.subTest(user_id=user_id):
                self.assertEqual(actual.windowed_counts(user_id=user_id).total, expected.windowed_counts(user_id=user_id).total)
                self.assertEqual(sum(actual.windowed_counts(user_id=user_id).total.values()), 1)


class ConcurrentAppendContract:
    """Appends from many threads must all land, each as a whole row."""

    THREADS = 8
    PER_THREAD = 25

    def test_concurrent_appends_lose_nothing(self):
        store = self.make_store()
        start = threading.Barrier(self.THREADS)

        def writer(worker):
            start.wait()
            for i in range(self.PER_THREAD):
                store.append(EmotionObservation(
                    emotion=EMOTIONS[i % len(EMOTIONS)],
                    timestamp=NOW - i,
                    confidence=0.5,
                    user_id=f"worker-{worker}",
                    source="webcam",
                ))

        threads = [threading.Thread(target=writer, args=(worker,)) for worker in range(self.THREADS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stored = store.read_all()
        self.assertEqual(len(stored), self.THREADS * self.PER_THREAD)
        for worker in range(self.THREADS):
            rows = [o for o in stored if o.user_id == f"worker-{worker}"]
            self.assertEqual(len(rows), self.PER_THREAD)
            self.assertTrue(all(o.confidence == 0.5 and o.source == "webcam" for o in rows))


class TestInMemoryStore(StoreContract, ConcurrentAppendContract, unittest.TestCase):
    def make_store(self):
        return InMemoryEmotionStore()

    def test_read_all_returns_a_copy(self):
        store = self.make_store()
        store.append(SAMPLE[0])
        store.read_all().clear()
        self.assertEqual(len(store), 1)


class TestCsvStore(StoreContract, ConcurrentAppendContract, unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.log_path = Path(self._tmp.name) / "data" / "mood_log.csv"

    def tearDown(self):
        self._tmp.cleanup()

    def make_store(self):
        return CsvEmotionStore(self.log_path)

    def test_header_is_written_on_first_append(self):
        store = self.make_store()
        store.append(SAMPLE[0])
        lines = self.log_path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(lines[0], "timestamp,emotion,confidence,user_id,source")
        self.assertEqual(len(lines), 2)

    def test_clear_keeps_header(self):
        store = self.make_store()
        store.append(SAMPLE[0])
        store.clear()
        self.assertEqual(
            self.log_path.read_text(encoding="utf-8"),
            "timestamp,emotion,confidence,user_id,source\n",
        )

    def test_malformed_rows_are_skipped(self):
        self.log_path.parent.mkdir(parents=True)
        self.log_path.write_text(
            "timestamp,emotion,confidence,user_id,source\n"
            f"{NOW},happy,0.5,,webcam\n"
            f"{NOW},ecstatic,0.5,,webcam\n"
            "not-a-time,sad,,,manual\n"
            f"{NOW},Sad,,,manual\n",
            encoding="utf-8",
        )
        with self.assertLogs("emotion_store", level="WARNING"):
            observations = self.make_store().read_all()
        self.assertEqual([o.emotion.value for o in observations], ["happy", "sad"])
        self.assertIsNone(observations[1].confidence)
        self.assertIsNone(observations[1].user_id)

    def test_values_with_commas_survive(self):
        store = self.make_store()
        observation = EmotionObservation(emotion="angry", timestamp=NOW, user_id="doe, jane")
        store.append(observation)
        self.assertEqual(store.read_all(), [observation])

    def test_unwritable_path_raises_storage_error(self):
        # A directory where the log file should be
        self.log_path.mkdir(parents=True)
        store = self.make_store()
        with self.assertRaises(StorageError):
            store.append(SAMPLE[0])
        with self.assertRaises(StorageError):
            store.read_all()


class TestSqliteStore(StoreContract, unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "mood_tracker.db"

    def tearDown(self):
        self._tmp.cleanup()

    def make_store(self):
        return SqliteEmotionStore(self.db_path)

    def test_data_survives_reopening(self):
        self.make_store().append(SAMPLE[1])
        self.assertEqual(self.make_store().read_all(), [SAMPLE[1]])

    def test_unopenable_database_raises_storage_error(self):
        self.db_path.mkdir()
        with self.assertRaises(StorageError):
            self.make_store()


class TestOpenStore(unittest.TestCase):
    def test_backend_selection(self):
        with tempfile.TemporaryDirectory() as tmp:
            data_dir = Path(tmp)
            self.assertIsInstance(open_store(TrackerConfig(data_dir, storage_backend="memory")), InMemoryEmotionStore)
            csv_store = open_store(TrackerConfig(data_dir, storage_backend="csv"))
            self.assertIsInstance(csv_store, CsvEmotionStore)
            self.assertEqual(csv_store.log_path, data_dir / "mood_log.csv")
            self.assertIsInstance(open_store(TrackerConfig(data_dir, storage_backend="sqlite")), SqliteEmotionStore)

    def test_unknown_backend(self):
        with self.assertRaises(ValueError):
            open_store(TrackerConfig(Path("."), storage_backend="mongo"))


if __name__ == '__main__':
    unittest.main()
