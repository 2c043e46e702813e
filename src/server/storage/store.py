"""
持久化键值存储。

基于 SQLite（WAL + synchronous=FULL）实现崩溃一致的事务性键值存储，
键与值都是原始字节串。

公开接口：
    - DurableStore(path, timeout=5.0)
    - DurableStore.update() -> 上下文管理器，单个可串行化写事务（BEGIN IMMEDIATE）
    - DurableStore.view()   -> 上下文管理器，只读事务
    - DurableStore.close()
    - Transaction.get / set / items

每个事务使用独立连接，事务之间不共享游标；存储关闭后新事务抛出 StoreError，
已在运行的事务照常完成。
"""

from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

from loguru import logger

from ..errors import StoreError


class Transaction:
    """单个事务内的读写句柄，只在 update()/view() 的 with 块内有效。"""

    def __init__(self, conn: sqlite3.Connection, writable: bool) -> None:
        self._conn = conn
        self._writable = writable

    def get(self, key: bytes) -> Optional[bytes]:
        row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (bytes(key),)).fetchone()
        if row is None:
            return None
        return bytes(row[0])

    def set(self, key: bytes, value: bytes) -> None:
        if not self._writable:
            raise StoreError("只读事务不能写入")
        self._conn.execute(
            "INSERT INTO kv(key, value) VALUES(?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (bytes(key), bytes(value)),
        )

    def items(self) -> Iterator[Tuple[bytes, bytes]]:
        """按键排序逐条返回 (key, value)。"""
        cur = self._conn.execute("SELECT key, value FROM kv ORDER BY key")
        for key, value in cur:
            yield bytes(key), bytes(value)


class DurableStore:
    """
    :param path: 数据库文件路径，目录不存在时自动创建。
    :param timeout: 等待其他写事务释放锁的秒数。
    """

    def __init__(self, path: str, timeout: float = 5.0) -> None:
        self.path = path
        self.timeout = timeout
        self._closed = False
        self._lock = threading.Lock()

        dir_path = os.path.dirname(path) or "."
        os.makedirs(dir_path, exist_ok=True)
        self._init()

    def _connect(self) -> sqlite3.Connection:
        with self._lock:
            if self._closed:
                raise StoreError("存储已关闭")
        try:
            # isolation_level=None：由本类显式控制 BEGIN/COMMIT
            conn = sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)
            conn.execute("PRAGMA synchronous = FULL")
        except sqlite3.Error as e:
            logger.error(f"打开存储失败 ({self.path}): {e}")
            raise StoreError(f"打开存储失败: {e}") from e
        return conn

    def _init(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(
                "CREATE TABLE IF NOT EXISTS kv ("
                "key BLOB PRIMARY KEY, "
                "value BLOB NOT NULL"
                ") WITHOUT ROWID"
            )
        except sqlite3.Error as e:
            logger.error(f"初始化存储失败 ({self.path}): {e}")
            raise StoreError(f"初始化存储失败: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, begin: str, writable: bool) -> Iterator[Transaction]:
        conn = self._connect()
        try:
            try:
                conn.execute(begin)
                yield Transaction(conn, writable)
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            logger.error(f"存储事务失败: {e}")
            raise StoreError(f"存储事务失败: {e}") from e
        finally:
            conn.close()

    def update(self):
        """可串行化写事务：正常退出提交，异常回滚。"""
        return self._transaction("BEGIN IMMEDIATE", writable=True)

    def view(self):
        """只读事务，事务内看到的是同一快照。"""
        return self._transaction("BEGIN", writable=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        logger.info(f"存储已关闭: {self.path}")

    def __enter__(self) -> "DurableStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
