"""
Job handlers for journal entry processing.

- analyze: reflective insight and recurring themes for an entry
- score: dominant emotion and its intensity (1-10)
- update_progress: fold the entry's intensity into the user's emotion trend
- check_rewards: unlock reflection rewards earned by the entry
- update_memory_loop: fold the entry's themes into the user's memory loop
- batch_analysis: score up to ten loose entries in one job
"""

import asyncio
import weakref
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from journalq.config import AppConfig, config as default_config
from journalq.jobs.context import get_current_job
from journalq.jobs.errors import NonRetryableJobError, RetryableJobError
from journalq.jobs.worker import WorkerPool
from journalq.services.completion import CompletionService
from journalq.services.storage import Storage
from journalq.utils.logging import get_logger

logger = get_logger("journal")

ANALYZE = "analyze"
SCORE = "score"
UPDATE_PROGRESS = "update_progress"
CHECK_REWARDS = "check_rewards"
UPDATE_MEMORY_LOOP = "update_memory_loop"
BATCH_ANALYSIS = "batch_analysis"

MAX_THEMES = 5

# Emotion trend
TREND_WINDOW = 30
TREND_SPAN = 3
MILESTONES = frozenset({1, 7, 30, 100})

# Batch analysis
MAX_BATCH_ENTRIES = 10
PREVIEW_CHARS = 100
FALLBACK_INTENSITY = 5

REWARD_TYPE = "secret_scroll"
REWARD_TITLES = {
    "first_reflection": "First Reflection",
    "reflection_seeker": "Reflection Seeker",
    "devoted_writer": "Devoted Writer",
    "deep_feeler": "Deep Feeler",
    "theme_weaver": "Theme Weaver",
}

ANALYZE_SYSTEM = (
    "You are a wise and compassionate journaling coach. Offer a warm, "
    "supportive reflection that helps the writer understand themselves."
)

ANALYZE_PROMPT = """Here is a journal entry:

\"\"\"{entry_text}\"\"\"

Reply with JSON only:
{{"insight": "<two or three sentences of reflection>", "themes": ["<short lowercase theme>", ...]}}
Use at most {max_themes} themes."""

SCORE_PROMPT = """Identify the dominant emotion in this journal entry and rate its intensity from 1 (faint) to 10 (overwhelming).

\"\"\"{entry_text}\"\"\"

Reply with JSON only:
{{"emotion": "<one lowercase word>", "intensity": <integer 1-10>}}"""


def _report(progress: int):
    job = get_current_job()
    if job is not None:
        job.set_progress(progress)


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise NonRetryableJobError(f"payload field '{key}' is required")
    return value


def _clean_themes(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    themes = []
    for item in raw:
        if isinstance(item, str) and item.strip():
            theme = item.strip().lower()
            if theme not in themes:
                themes.append(theme)
    return themes[:MAX_THEMES]


def _parse_score(reply: Dict[str, Any]) -> Tuple[str, int]:
    emotion = reply.get("emotion")
    if not isinstance(emotion, str) or not emotion.strip():
        raise RetryableJobError("Completion reply had no emotion")
    try:
        intensity = int(reply.get("intensity"))
    except (TypeError, ValueError):
        raise RetryableJobError("Completion reply had no numeric intensity")
    return emotion.strip().lower(), max(1, min(10, intensity))


def _trend(scores: List[int]) -> str:
    """Compare the latest TREND_SPAN scores with the span before them."""
    if len(scores) < 2 * TREND_SPAN:
        return "steady"
    latest = sum(scores[-TREND_SPAN:]) / TREND_SPAN
    earlier = sum(scores[-2 * TREND_SPAN:-TREND_SPAN]) / TREND_SPAN
    if latest - earlier >= 1:
        return "rising"
    if earlier - latest >= 1:
        return "falling"
    return "steady"


def _earned_rewards(entry_count: int, entry: Dict[str, Any]) -> List[str]:
    earned = []
    if entry_count >= 1:
        earned.append("first_reflection")
    if entry_count >= 7:
        earned.append("reflection_seeker")
    if entry_count >= 30:
        earned.append("devoted_writer")
    if (entry.get("emotion_score") or 0) >= 9:
        earned.append("deep_feeler")
    if len(entry.get("themes") or []) >= 3:
        earned.append("theme_weaver")
    return earned


def _preview(text: str) -> str:
    return text if len(text) <= PREVIEW_CHARS else text[:PREVIEW_CHARS] + "..."


class JournalHandlers:
    """
    Handler implementations bound to their collaborators.

    Per-user rows (progress, rewards, memory loop) are read, changed and
    written back, so those updates hold a per-user lock. Entry rows are
    only ever merged field by field.
    """

    def __init__(
        self,
        completion: CompletionService,
        storage: Storage,
        settings: Optional[AppConfig] = None
    ):
        self.completion = completion
        self.storage = storage
        self.settings = settings or default_config
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    async def _load_entry(self, entry_id: str, *fields: str) -> Dict[str, Any]:
        """
        Read an entry whose ``fields`` are filled in by earlier bundle jobs.

        A missing row and a row whose column is still NULL both mean the
        producing job has not finished, so the caller gets a retryable error.
        """
        entry = await self.storage.get(self.settings.JOURNAL_TABLE, entry_id)
        missing = [name for name in fields if entry is None or entry.get(name) is None]
        if missing:
            raise RetryableJobError(
                f"Entry {entry_id} not ready: {', '.join(missing)} not available yet"
            )
        return entry

    # =========================================================================
    # Entry jobs
    # =========================================================================

    async def analyze(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        entry_id = _require_str(payload, "entry_id")
        user_id = _require_str(payload, "user_id")
        entry_text = _require_str(payload, "entry_text")

        _report(10)
        reply = await self.completion.complete_json(
            ANALYZE_PROMPT.format(entry_text=entry_text, max_themes=MAX_THEMES),
            system=ANALYZE_SYSTEM,
        )
        insight = reply.get("insight")
        if not isinstance(insight, str) or not insight.strip():
            raise RetryableJobError("Completion reply had no insight")
        themes = _clean_themes(reply.get("themes"))

        _report(70)
        await self.storage.upsert(self.settings.JOURNAL_TABLE, {
            "id": entry_id,
            "user_id": user_id,
            "ai_response": insight.strip(),
            "themes": themes,
        })

        logger.info("Journal entry analyzed", entry_id=entry_id, themes=len(themes))
        return {"entry_id": entry_id, "insight": insight.strip(), "themes": themes}

    async def score(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        entry_id = _require_str(payload, "entry_id")
        entry_text = _require_str(payload, "entry_text")

        _report(20)
        reply = await self.completion.complete_json(SCORE_PROMPT.format(entry_text=entry_text))
        emotion, intensity = _parse_score(reply)

        _report(80)
        await self.storage.upsert(self.settings.JOURNAL_TABLE, {
            "id": entry_id,
            "emotion": emotion,
            "emotion_score": intensity,
        })

        return {"entry_id": entry_id, "emotion": emotion, "intensity": intensity}

    # =========================================================================
    # Per-user jobs
    # =========================================================================

    async def update_progress(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        entry_id = _require_str(payload, "entry_id")
        user_id = _require_str(payload, "user_id")

        entry = await self._load_entry(entry_id, "emotion_score")

        _report(30)
        async with self._user_lock(user_id):
            progress = await self.storage.get(self.settings.PROGRESS_TABLE, user_id) or {}
            recent: List[Dict[str, Any]] = list(progress.get("recent_scores") or [])
            entry_ids: List[str] = list(progress.get("entry_ids") or [])

            is_new = entry_id not in entry_ids
            if is_new:
                entry_ids.append(entry_id)
                recent.append({
                    "entry_id": entry_id,
                    "emotion": entry.get("emotion"),
                    "score": int(entry["emotion_score"]),
                })
                recent = recent[-TREND_WINDOW:]

            scores = [item["score"] for item in recent]
            average = round(sum(scores) / len(scores), 1) if scores else 0.0
            trend = _trend(scores)

            await self.storage.upsert(self.settings.PROGRESS_TABLE, {
                "id": user_id,
                "recent_scores": recent,
                "entry_ids": entry_ids,
                "total_entries": len(entry_ids),
                "average_intensity": average,
                "trend": trend,
                "last_entry_id": entry_id,
            })

        milestone = is_new and len(entry_ids) in MILESTONES
        logger.info("Emotion trend updated", user_id=user_id, entries=len(entry_ids), trend=trend)
        return {
            "user_id": user_id,
            "total_entries": len(entry_ids),
            "average_intensity": average,
            "trend": trend,
            "milestone_reached": milestone,
        }

    async def check_rewards(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        entry_id = _require_str(payload, "entry_id")
        user_id = _require_str(payload, "user_id")

        entry = await self._load_entry(entry_id, "themes", "emotion_score")

        async with self._user_lock(user_id):
            row = await self.storage.get(self.settings.REWARDS_TABLE, user_id) or {}
            unlocked: List[str] = list(row.get("unlocked") or [])
            entry_ids: List[str] = list(row.get("entry_ids") or [])

            if entry_id not in entry_ids:
                entry_ids.append(entry_id)
            new = [r for r in _earned_rewards(len(entry_ids), entry) if r not in unlocked]
            unlocked.extend(new)

            await self.storage.upsert(self.settings.REWARDS_TABLE, {
                "id": user_id,
                "unlocked": unlocked,
                "entry_ids": entry_ids,
                "last_entry_id": entry_id,
            })

        if new:
            logger.info("Rewards unlocked", user_id=user_id, rewards=new)
        return {
            "user_id": user_id,
            "reward_unlocked": bool(new),
            "rewards": [
                {"id": reward, "title": REWARD_TITLES[reward], "type": REWARD_TYPE}
                for reward in new
            ],
            "total_unlocked": len(unlocked),
        }

    async def update_memory_loop(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        entry_id = _require_str(payload, "entry_id")
        user_id = _require_str(payload, "user_id")

        entry = await self._load_entry(entry_id, "themes")

        _report(40)
        async with self._user_lock(user_id):
            loop = await self.storage.get(self.settings.MEMORY_LOOP_TABLE, user_id) or {}
            theme_counts: Dict[str, int] = dict(loop.get("theme_counts") or {})
            entry_ids: List[str] = list(loop.get("entry_ids") or [])

            if entry_id not in entry_ids:
                for theme in entry["themes"]:
                    theme_counts[theme] = theme_counts.get(theme, 0) + 1
                entry_ids.append(entry_id)

            top_themes = [
                theme for theme, _ in sorted(theme_counts.items(), key=lambda item: (-item[1], item[0]))
            ][:MAX_THEMES]

            await self.storage.upsert(self.settings.MEMORY_LOOP_TABLE, {
                "id": user_id,
                "theme_counts": theme_counts,
                "top_themes": top_themes,
                "entry_ids": entry_ids,
                "last_entry_id": entry_id,
            })

        logger.info("Memory loop updated", user_id=user_id, entries=len(entry_ids))
        return {"user_id": user_id, "top_themes": top_themes, "entry_count": len(entry_ids)}

    # =========================================================================
    # Batch jobs
    # =========================================================================

    async def batch_analysis(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Score up to MAX_BATCH_ENTRIES entries.

        An entry whose analysis fails gets a fallback row instead of failing
        the whole batch.
        """
        user_id = _require_str(payload, "user_id")
        entries = payload.get("entries")
        if not isinstance(entries, list) or not entries or not all(isinstance(e, str) for e in entries):
            raise NonRetryableJobError("payload field 'entries' must be a non-empty list of strings")

        batch = entries[:MAX_BATCH_ENTRIES]
        results: List[Dict[str, Any]] = []
        for index, text in enumerate(batch, start=1):
            try:
                reply = await self.completion.complete_json(SCORE_PROMPT.format(entry_text=text))
                emotion, intensity = _parse_score(reply)
            except (RetryableJobError, NonRetryableJobError) as e:
                logger.warning("Batch entry analysis failed", user_id=user_id, index=index, error=str(e))
                results.append({
                    "text": _preview(text),
                    "error": "Analysis failed",
                    "emotion": "unknown",
                    "intensity": FALLBACK_INTENSITY,
                    "word_count": 0,
                })
            else:
                results.append({
                    "text": _preview(text),
                    "emotion": emotion,
                    "intensity": intensity,
                    "word_count": len(text.split()),
                })
            _report(100 * index // len(batch))

        scored = [r["emotion"] for r in results if "error" not in r]
        summary = {
            "total_entries": len(results),
            "failed": len(results) - len(scored),
            "average_intensity": round(sum(r["intensity"] for r in results) / len(results), 1),
            "dominant_emotion": Counter(scored).most_common(1)[0][0] if scored else "neutral",
            "total_words": sum(r["word_count"] for r in results),
        }
        return {"user_id": user_id, "results": results, "summary": summary}


def register_journal_handlers(
    pool: WorkerPool,
    completion: CompletionService,
    storage: Storage,
    settings: Optional[AppConfig] = None
) -> JournalHandlers:
    handlers = JournalHandlers(completion, storage, settings or pool.queue.settings)
    pool.register(ANALYZE, handlers.analyze)
    pool.register(SCORE, handlers.score)
    pool.register(UPDATE_PROGRESS, handlers.update_progress)
    pool.register(CHECK_REWARDS, handlers.check_rewards)
    pool.register(UPDATE_MEMORY_LOOP, handlers.update_memory_loop)
    pool.register(BATCH_ANALYSIS, handlers.batch_analysis)
    return handlers
