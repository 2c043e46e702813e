"""
证书签发的业务编排层。

状态流转：
    RECEIVED -> TOKEN_VERIFIED -> ADDRESS_ALLOCATED -> SIGNED -> RECORDED -> COMPLETE
任一步失败进入 FAILED，以 IssuanceFailed 抛出，不做任何自动重试。

已知缺口：
- 签名失败时已分配的地址不会归还；
- 签名成功但写账本失败时，证书已存在却没有记录，只在日志中留下痕迹。
"""

from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Callable, List, Optional

import jwt
from loguru import logger

from ..auth.verifier import TokenVerifier
from ..errors import (
    AllocationError,
    GatekeeperError,
    KeySetError,
    PersistenceError,
    SigningError,
    TokenError,
)
from ..storage.allocator import AddressAllocator
from ..storage.ledger import RecordLedger
from ..storage.schemas import CertRecord
from .schemas import FailureReason, IssuanceResult, IssuanceState, IssueCertRequest
from .signer import Signer


class IssuanceFailed(Exception):
    """
    签发流程进入 FAILED 状态。
    :param reason: 失败类别。
    :param state: 失败前到达的最后一个状态。
    :param cause: 原始异常。
    """

    def __init__(self, reason: FailureReason, state: IssuanceState, cause: GatekeeperError) -> None:
        super().__init__(f"签发失败 [{reason.value}] @ {state.value}: {cause}")
        self.reason = reason
        self.state = state
        self.cause = cause


class IssuanceOrchestrator:
    """
    组合令牌校验、地址分配、外部签名与记录账本。
    所有依赖通过构造函数注入，不引用任何全局存储句柄。
    """

    def __init__(
        self,
        verifier: TokenVerifier,
        key_set_loader: Callable[[], jwt.PyJWKSet],
        allocator: AddressAllocator,
        signer: Signer,
        ledger: RecordLedger,
        signer_timeout: float = 30.0,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.verifier = verifier
        self.key_set_loader = key_set_loader
        self.allocator = allocator
        self.signer = signer
        self.ledger = ledger
        self.signer_timeout = signer_timeout
        self.id_factory = id_factory

        self._in_flight = 0
        self._idle = threading.Condition()
        self._sign_pool = ThreadPoolExecutor(thread_name_prefix="signer")

    # --- 生命周期 ------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        with self._idle:
            return self._in_flight

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """等待所有进行中的签发结束；超时返回 False。"""
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    def shutdown(self) -> None:
        self._sign_pool.shutdown(wait=False)

    # --- 签发 ----------------------------------------------------------------

    def issue(self, req: IssueCertRequest) -> IssuanceResult:
        """
        执行一次完整签发。
        :raises IssuanceFailed: 任一阶段失败。
        """
        with self._idle:
            self._in_flight += 1
        try:
            return self._run(req)
        finally:
            with self._idle:
                self._in_flight -= 1
                self._idle.notify_all()

    def _run(self, req: IssueCertRequest) -> IssuanceResult:
        history: List[IssuanceState] = [IssuanceState.RECEIVED]

        def fail(reason: FailureReason, cause: GatekeeperError) -> IssuanceFailed:
            logger.warning(f"签发失败 [{reason.value}] @ {history[-1].value}: {cause}")
            history.append(IssuanceState.FAILED)
            return IssuanceFailed(reason, history[-2], cause)

        # RECEIVED -> TOKEN_VERIFIED
        try:
            key_set = self.key_set_loader()
            identity = self.verifier.verify(req.token, key_set)
        except (KeySetError, TokenError) as e:
            raise fail(FailureReason.AUTH, e) from e
        history.append(IssuanceState.TOKEN_VERIFIED)

        # TOKEN_VERIFIED -> ADDRESS_ALLOCATED
        try:
            ip_address = self.allocator.next_address()
        except (AllocationError, PersistenceError) as e:
            raise fail(FailureReason.ALLOCATION, e) from e
        history.append(IssuanceState.ADDRESS_ALLOCATED)

        # ADDRESS_ALLOCATED -> SIGNED
        try:
            certificate = self._sign_with_timeout(req.pub_key, identity, ip_address)
        except SigningError as e:
            logger.error(f"地址 {ip_address} 已分配但签名失败，地址不会回收")
            raise fail(FailureReason.SIGNING, e) from e
        history.append(IssuanceState.SIGNED)

        # SIGNED -> RECORDED
        record_id = self.id_factory()
        record = CertRecord(pub_key=req.pub_key, token=req.token, ip_addr=ip_address)
        try:
            self.ledger.put(record_id, record)
        except PersistenceError as e:
            logger.error(
                f"证书已签发但未记录: record_id={record_id}, email={identity.email}, ip={ip_address}\n"
                f"{certificate}"
            )
            raise fail(FailureReason.PERSISTENCE, e) from e
        history.append(IssuanceState.RECORDED)

        history.append(IssuanceState.COMPLETE)
        logger.info(f"证书签发完成: {identity.email} -> {ip_address} (record_id={record_id})")
        return IssuanceResult(
            record_id=record_id,
            certificate=certificate,
            ip_address=ip_address,
            email=identity.email,
            history=history,
        )

    def _sign_with_timeout(self, public_key: str, identity, ip_address: str) -> str:
        """外部签名器可能挂起，这里强制超时。"""
        future = self._sign_pool.submit(self.signer.sign, public_key, identity, ip_address)
        try:
            return future.result(timeout=self.signer_timeout)
        except FutureTimeoutError as e:
            future.cancel()
            raise SigningError(f"签名超时 ({self.signer_timeout}s)") from e
        except SigningError:
            raise
        except Exception as e:
            raise SigningError(f"签名器异常: {e}") from e
