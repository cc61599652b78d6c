"""
队列持久化

- queue.json: 队列快照，临时文件 + fsync + 原子替换
- outcomes.jsonl: 终态记录（SENT / FAILED / CANCELLED），追加写入并 fsync，
  重启后 status() 仍可查询；行数超过阈值时压缩为最近的记录
- 导出文件: 与快照同格式，附带导出时间与容量，用于设备间迁移或刷机后恢复
"""

import os
import time
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from loguru import logger

from seacomm_agent.domain.errors import StorageError
from seacomm_agent.domain.models import Message
from seacomm_agent.utils import json

SNAPSHOT_FILE = "queue.json"
LEDGER_FILE = "outcomes.jsonl"
SNAPSHOT_VERSION = 1


def _fsync_dir(path: Path) -> None:
    """fsync 目录，使 rename 持久化（非 POSIX 平台跳过）"""
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(str(path), os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


async def _atomic_write(path: Path, content: str) -> None:
    """临时文件 + fsync + 原子替换"""
    tmp_path = path.with_name(path.name + ".tmp")
    os.makedirs(path.parent, exist_ok=True)
    async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
        await f.write(content)
        await f.flush()
        os.fsync(f.fileno())
    await aiofiles.os.replace(tmp_path, path)
    _fsync_dir(path.parent)


def outcome_record(message: Message, finished_at: float | None = None) -> dict[str, Any]:
    """终态记录（不含负载）"""
    record = message.status_view()
    record["finished_at"] = finished_at if finished_at is not None else time.time()
    record["size"] = message.size
    record["attempt_log"] = [a.to_dict() for a in message.attempt_log]
    return record


def parse_messages(content: str, path: str | Path) -> list[Message]:
    """解析快照或导出文件中的消息列表"""
    try:
        data = json.loads(content) if content.strip() else {}
        if not isinstance(data, dict) or not isinstance(data.get("messages", []), list):
            raise ValueError("缺少 messages 列表")
        return [Message.from_dict(item) for item in data.get("messages", [])]
    except (ValueError, KeyError, TypeError) as e:
        raise StorageError(f"队列数据损坏: {e}", path=str(path)) from e


class QueueStore:
    """队列快照与终态账本"""

    def __init__(self, directory: str | Path, max_ledger_entries: int = 10000):
        self._dir = Path(directory)
        self._snapshot_path = self._dir / SNAPSHOT_FILE
        self._ledger_path = self._dir / LEDGER_FILE
        self._max_ledger_entries = max_ledger_entries
        # 超过保留条数 10% 后再压缩，避免每次追加都重写
        self._compact_threshold = max_ledger_entries + max(1, max_ledger_entries // 10)
        self._ledger_lines: int | None = None

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def snapshot_path(self) -> Path:
        return self._snapshot_path

    @property
    def ledger_path(self) -> Path:
        return self._ledger_path

    @property
    def max_ledger_entries(self) -> int:
        return self._max_ledger_entries

    # ==================== 写入 ====================

    async def save_snapshot(self, messages: list[Message]) -> None:
        """原子写入队列快照"""
        content = json.dumps({
            "version": SNAPSHOT_VERSION,
            "saved_at": time.time(),
            "messages": [m.to_dict() for m in messages],
        })
        try:
            await _atomic_write(self._snapshot_path, content)
        except OSError as e:
            raise StorageError(f"写入队列快照失败: {e}", path=str(self._snapshot_path)) from e

    async def append_outcome(self, record: dict[str, Any]) -> None:
        """追加一条终态记录，超过阈值时压缩账本"""
        if self._ledger_lines is None:
            self._ledger_lines = await self._count_ledger_lines()

        line = json.dumps(record) + "\n"
        try:
            os.makedirs(self._dir, exist_ok=True)
            async with aiofiles.open(self._ledger_path, "a", encoding="utf-8") as f:
                await f.write(line)
                await f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StorageError(f"写入终态账本失败: {e}", path=str(self._ledger_path)) from e

        self._ledger_lines += 1
        if self._ledger_lines > self._compact_threshold:
            outcomes, _ = self._parse_ledger(await self._read_ledger())
            await self._compact(outcomes)

    async def export_messages(
        self,
        path: str | Path,
        messages: list[Message],
        capacity: int | None = None,
    ) -> Path:
        """导出消息（含负载）到指定文件"""
        path = Path(path)
        content = json.dumps({
            "version": SNAPSHOT_VERSION,
            "exported_at": time.time(),
            "capacity": capacity,
            "messages": [m.to_dict() for m in messages],
        })
        try:
            await _atomic_write(path, content)
        except OSError as e:
            raise StorageError(f"导出队列失败: {e}", path=str(path)) from e
        return path

    # ==================== 读取 ====================

    async def load_snapshot(self) -> list[Message]:
        """读取队列快照（不存在时为空）"""
        if not self._snapshot_path.exists():
            return []
        try:
            async with aiofiles.open(self._snapshot_path, encoding="utf-8") as f:
                content = await f.read()
        except OSError as e:
            raise StorageError(f"读取队列快照失败: {e}", path=str(self._snapshot_path)) from e
        return parse_messages(content, self._snapshot_path)

    async def load_outcomes(self) -> dict[str, dict[str, Any]]:
        """读取终态账本（id -> 最新记录），损坏的行跳过"""
        if not self._ledger_path.exists():
            self._ledger_lines = 0
            return {}
        outcomes, lines = self._parse_ledger(await self._read_ledger())
        self._ledger_lines = lines

        if lines > self._max_ledger_entries:
            await self._compact(outcomes)
        return outcomes

    async def read_export(self, path: str | Path) -> list[Message]:
        """读取导出文件"""
        path = Path(path)
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
        except OSError as e:
            raise StorageError(f"读取导出文件失败: {e}", path=str(path)) from e
        return parse_messages(content, path)

    def read_sync(self) -> tuple[list[Message], dict[str, dict[str, Any]]]:
        """同步读取（离线查看用）"""
        messages: list[Message] = []
        outcomes: dict[str, dict[str, Any]] = {}
        try:
            if self._snapshot_path.exists():
                messages = parse_messages(
                    self._snapshot_path.read_text(encoding="utf-8"), self._snapshot_path
                )
            if self._ledger_path.exists():
                outcomes, _ = self._parse_ledger(self._ledger_path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StorageError(f"读取队列数据失败: {e}", path=str(self._dir)) from e
        return messages, outcomes

    # ==================== 内部方法 ====================

    async def _read_ledger(self) -> str:
        try:
            async with aiofiles.open(self._ledger_path, encoding="utf-8") as f:
                return await f.read()
        except OSError as e:
            raise StorageError(f"读取终态账本失败: {e}", path=str(self._ledger_path)) from e

    async def _count_ledger_lines(self) -> int:
        if not self._ledger_path.exists():
            return 0
        content = await self._read_ledger()
        return sum(1 for line in content.splitlines() if line.strip())

    def _parse_ledger(self, content: str) -> tuple[dict[str, dict[str, Any]], int]:
        outcomes: dict[str, dict[str, Any]] = {}
        lines = 0
        for lineno, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            lines += 1
            try:
                record = json.loads(line)
                outcomes[record["id"]] = record
            except (ValueError, KeyError, TypeError) as e:
                # 掉电时最后一行可能不完整
                logger.warning(f"终态账本第 {lineno} 行损坏，已跳过: {e}")
        return outcomes, lines

    async def _compact(self, outcomes: dict[str, dict[str, Any]]) -> None:
        """只保留最近的记录"""
        records = sorted(outcomes.values(), key=lambda r: r.get("finished_at") or 0)
        kept = records[-self._max_ledger_entries:]
        content = "".join(json.dumps(record) + "\n" for record in kept)
        try:
            await _atomic_write(self._ledger_path, content)
        except OSError as e:
            raise StorageError(f"压缩终态账本失败: {e}", path=str(self._ledger_path)) from e

        self._ledger_lines = len(kept)
        dropped = len(records) - len(kept)
        for record in records[:dropped]:
            outcomes.pop(record["id"], None)
        logger.info(f"终态账本已压缩: 保留 {len(kept)} 条，丢弃 {dropped} 条")
