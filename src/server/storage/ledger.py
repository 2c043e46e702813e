"""
证书签发记录账本。

记录以 JSON 写入，键为记录 ID（GUID）。账本只追加，不覆盖、不删除；
ID 的唯一性由调用方保证，重复写入同一 ID 会被拒绝。
"""

from __future__ import annotations

from typing import Iterator, Tuple

from loguru import logger
from pydantic import ValidationError

from ..errors import EncodeError, NotFoundError, StoreError
from .allocator import CURSOR_KEY
from .schemas import CertRecord
from .store import DurableStore


def encode_record(record: CertRecord) -> bytes:
    try:
        return record.model_dump_json(by_alias=True).encode("utf-8")
    except (ValueError, TypeError) as e:
        raise EncodeError(f"记录无法序列化: {e}") from e


def decode_record(data: bytes) -> CertRecord:
    try:
        return CertRecord.model_validate_json(data)
    except ValidationError as e:
        raise StoreError(f"存储中的记录已损坏: {e}") from e


class RecordLedger:
    def __init__(self, store: DurableStore) -> None:
        self._store = store

    def _key(self, record_id: str) -> bytes:
        if not record_id:
            raise StoreError("记录 ID 不能为空")
        key = record_id.encode("utf-8")
        if key == CURSOR_KEY:
            raise StoreError(f"记录 ID 与保留键冲突: {record_id}")
        return key

    def put(self, record_id: str, record: CertRecord) -> None:
        """
        写入一条记录。
        :raises EncodeError: 记录无法序列化。
        :raises StoreError: ID 非法、已存在或事务失败。
        """
        payload = encode_record(record)
        key = self._key(record_id)
        with self._store.update() as txn:
            if txn.get(key) is not None:
                raise StoreError(f"记录已存在，账本不允许覆盖: {record_id}")
            txn.set(key, payload)
        logger.info(f"已写入证书记录 {record_id} ({record.ip_addr})")

    def get(self, record_id: str) -> CertRecord:
        """
        :raises NotFoundError: 记录不存在。
        """
        key = self._key(record_id)
        with self._store.view() as txn:
            data = txn.get(key)
        if data is None:
            raise NotFoundError(f"记录不存在: {record_id}")
        return decode_record(data)

    def list_all(self) -> Iterator[Tuple[str, CertRecord]]:
        """逐条返回全部 (record_id, CertRecord)，跳过地址游标；生成器只能遍历一次。"""
        with self._store.view() as txn:
            for key, value in txn.items():
                if key == CURSOR_KEY:
                    continue
                yield key.decode("utf-8"), decode_record(value)

    def count(self) -> int:
        """记录条数，只数键不解码记录内容。"""
        with self._store.view() as txn:
            return sum(1 for key, _ in txn.items() if key != CURSOR_KEY)
