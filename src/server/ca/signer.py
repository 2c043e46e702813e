"""
外部签名工具封装。

签名被建模为一个能力接口 Signer.sign(public_key, identity, ip_address)，
编排器只依赖该接口，测试中可用假实现替换。
NebulaCertSigner 通过调用 nebula-cert CLI 完成实际签名。
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from typing import Protocol, Sequence

from loguru import logger

from ..auth.schemas import Identity
from ..errors import SigningError


class Signer(Protocol):
    def sign(self, public_key: str, identity: Identity, ip_address: str) -> str:
        """返回 PEM 格式证书；失败抛出 SigningError。"""
        ...


class NebulaCertSigner:
    """
    调用 nebula-cert sign 对客户端提供的公钥签发证书。
    :param binary: nebula-cert 可执行文件路径。
    :param ca_cert_file: CA 证书路径。
    :param ca_key_file: CA 私钥路径。
    :param prefix_length: 写入证书的网段前缀长度，如 8 表示 10.0.0.1/8。
    :param groups: 证书所属分组。
    :param duration: 证书有效期（nebula-cert 的 duration 格式），为空则由工具决定。
    :param timeout: 子进程超时（秒）。
    """

    def __init__(
        self,
        binary: str,
        ca_cert_file: str,
        ca_key_file: str,
        prefix_length: int,
        groups: Sequence[str] = (),
        duration: str = "",
        timeout: float = 30.0,
    ) -> None:
        self.binary = binary
        self.ca_cert_file = ca_cert_file
        self.ca_key_file = ca_key_file
        self.prefix_length = prefix_length
        self.groups = list(groups)
        self.duration = duration
        self.timeout = timeout

    def build_command(self, name: str, ip_address: str, pub_path: str, crt_path: str) -> list[str]:
        cmd = [
            self.binary,
            "sign",
            "-ca-crt", self.ca_cert_file,
            "-ca-key", self.ca_key_file,
            "-name", name,
            "-ip", f"{ip_address}/{self.prefix_length}",
            "-in-pub", pub_path,
            "-out-crt", crt_path,
        ]
        if self.groups:
            cmd.extend(["-groups", ",".join(self.groups)])
        if self.duration:
            cmd.extend(["-duration", self.duration])
        return cmd

    def sign(self, public_key: str, identity: Identity, ip_address: str) -> str:
        """
        :return: PEM 格式的 nebula 证书。
        :raises SigningError: 工具缺失、超时、返回非零或未产出证书。
        """
        for path in (self.ca_cert_file, self.ca_key_file):
            if not os.path.exists(path):
                raise SigningError(f"CA 文件未找到: {path}")

        with tempfile.TemporaryDirectory(prefix="nebula-temp") as tmpdir:
            pub_path = os.path.join(tmpdir, "host.pub")
            crt_path = os.path.join(tmpdir, "host.crt")

            with open(pub_path, "w", encoding="utf-8") as f:
                f.write(public_key)

            cmd = self.build_command(identity.email, ip_address, pub_path, crt_path)
            logger.debug(f"Executing command: {' '.join(cmd)}")

            try:
                result = subprocess.run(
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired as e:
                raise SigningError(f"nebula-cert 签名超时 ({self.timeout}s)") from e
            except OSError as e:
                raise SigningError(f"无法执行 nebula-cert: {e}") from e

            if result.returncode != 0:
                error_msg = f"证书签发失败 (nebula-cert sign): {result.stderr.strip()}"
                logger.error(error_msg)
                raise SigningError(error_msg)

            if not os.path.exists(crt_path):
                raise SigningError("nebula-cert 未生成证书文件")

            with open(crt_path, "r", encoding="utf-8") as f:
                return f.read()
