"""JSON file-backed repository.

Storage layout:
    {base_path}/
      topics/
        {topic_id}/
          strategy.json          # Topic row + strategy versions (atomically replaced)
          episodes.jsonl         # Episode snapshots (append-only, last line wins)
          evolution_log.jsonl    # Evolution log entries (append-only)

State is loaded once at construction and written through on every change.
Single-process: cross-process writers are not coordinated.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
from collections.abc import Sequence
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from deepcurrent.errors import TransientStoreError
from deepcurrent.governance.schemas import EvolutionLogEntry
from deepcurrent.storage.models import StrategyVersion, Topic
from deepcurrent.storage.repository import InMemoryRepository, _TopicState
from deepcurrent.telemetry.episode import Episode

logger = logging.getLogger(__name__)


def _atomic_write(path: Path, content: str) -> None:
    """Write *content* to *path* via a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line + "\n")


def _commit_strategy(strategy_path: Path, content: str, log_path: Path, lines: list[str]) -> None:
    """Append staged log lines, then replace the strategy file.

    If the strategy write fails the log is truncated back to its previous
    length, so neither change is visible on its own.
    """
    if not lines:
        _atomic_write(strategy_path, content)
        return

    log_path.parent.mkdir(parents=True, exist_ok=True)
    offset = log_path.stat().st_size if log_path.exists() else 0
    with open(log_path, "a", encoding="utf-8") as f:
        f.write("".join(line + "\n" for line in lines))
    try:
        _atomic_write(strategy_path, content)
    except BaseException:
        with open(log_path, "r+", encoding="utf-8") as f:
            f.truncate(offset)
        raise


class JsonFileRepository(InMemoryRepository):
    """Repository persisted as JSON files under *base_path*."""

    def __init__(self, base_path: Path | str) -> None:
        super().__init__()
        self._base_path = Path(base_path)
        self._topics_dir = self._base_path / "topics"
        self._topics_dir.mkdir(parents=True, exist_ok=True)
        self._load()

    @property
    def base_path(self) -> Path:
        return self._base_path

    def _topic_dir(self, topic_id: str) -> Path:
        return self._topics_dir / topic_id

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self) -> None:
        for topic_dir in sorted(self._topics_dir.iterdir()):
            strategy_file = topic_dir / "strategy.json"
            if not strategy_file.exists():
                continue
            try:
                data = json.loads(strategy_file.read_text(encoding="utf-8"))
                topic = Topic.model_validate(data["topic"])
                versions = [StrategyVersion.model_validate(v) for v in data.get("versions", [])]
            except (json.JSONDecodeError, KeyError, PydanticValidationError) as e:
                logger.error(f"Failed to load strategy file {strategy_file}: {e}")
                continue

            state = _TopicState(topic=topic, versions={v.version: v for v in versions})
            self._load_episodes(topic_dir / "episodes.jsonl", state)
            self._load_log(topic_dir / "evolution_log.jsonl", state)
            self._topics[topic.topic_id] = state

        logger.info(f"JsonFileRepository loaded {len(self._topics)} topics from {self._base_path}")

    def _load_episodes(self, path: Path, state: _TopicState) -> None:
        if not path.exists():
            return
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    episode = Episode.model_validate_json(line)
                except PydanticValidationError as e:
                    logger.warning(f"Failed to parse episode in {path}: {e}")
                    continue
                state.episodes[episode.episode_id] = episode
                self._episode_index[episode.episode_id] = episode.topic_id

    def _load_log(self, path: Path, state: _TopicState) -> None:
        if not path.exists():
            return
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    state.log.append(EvolutionLogEntry.model_validate_json(line))
                except PydanticValidationError as e:
                    logger.warning(f"Failed to parse evolution log entry in {path}: {e}")

    # ------------------------------------------------------------------
    # Persistence hooks
    # ------------------------------------------------------------------

    async def _persist_strategy(
        self,
        topic: Topic,
        versions: dict[int, StrategyVersion],
        log_entries: Sequence[EvolutionLogEntry] = (),
    ) -> None:
        payload = {
            "topic": topic.model_dump(mode="json"),
            "versions": [versions[n].model_dump(mode="json") for n in sorted(versions)],
        }
        topic_dir = self._topic_dir(topic.topic_id)
        await self._io(
            _commit_strategy,
            topic_dir / "strategy.json",
            json.dumps(payload, indent=2),
            topic_dir / "evolution_log.jsonl",
            [e.model_dump_json() for e in log_entries],
        )

    async def _persist_episode(self, episode: Episode) -> None:
        path = self._topic_dir(episode.topic_id) / "episodes.jsonl"
        await self._io(_append_line, path, episode.model_dump_json())

    async def _persist_log_entry(self, entry: EvolutionLogEntry) -> None:
        path = self._topic_dir(entry.topic_id) / "evolution_log.jsonl"
        await self._io(_append_line, path, entry.model_dump_json())

    async def _rewrite_log(self, topic_id: str, entries: list[EvolutionLogEntry]) -> None:
        path = self._topic_dir(topic_id) / "evolution_log.jsonl"
        content = "".join(e.model_dump_json() + "\n" for e in entries)
        await self._io(_atomic_write, path, content)

    async def _remove_topic(self, topic_id: str) -> None:
        await self._io(shutil.rmtree, self._topic_dir(topic_id), True)

    async def _io(self, fn, *args) -> None:
        try:
            await asyncio.to_thread(fn, *args)
        except OSError as e:
            raise TransientStoreError(f"Store write failed: {e}") from e
