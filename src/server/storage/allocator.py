"""
顺序 IPv4 地址分配。

游标 currentIPAddress 保存最近一次分配出去的地址。每次分配在同一个写事务里
完成“读游标 → 计算下一个地址 → 写回游标”，并发请求不会拿到相同地址。

进位规则：末段加一后若大于 254 则归零并向前一段进位，依次类推；
以 .255 结尾的广播地址永远不会被分配。首段进位超过 254 视为地址空间耗尽，
直接报错，不回绕。
"""

from __future__ import annotations

import ipaddress
from typing import Optional, Tuple

from loguru import logger

from ..errors import AddressSpaceExhaustedError, ParseError
from .store import DurableStore

CURSOR_KEY = b"currentIPAddress"

_MAX_OCTET = 254


def parse_ip(text: str) -> Tuple[int, int, int, int]:
    """
    解析点分十进制地址。
    :raises ParseError: 不是四段 0-255 的十进制整数。
    """
    parts = text.strip().split(".")
    if len(parts) != 4:
        raise ParseError(f"地址必须是四段点分十进制: {text!r}")
    octets = []
    for part in parts:
        if not (part.isascii() and part.isdigit()):
            raise ParseError(f"地址段不是十进制整数: {text!r}")
        value = int(part)
        if value > 255:
            raise ParseError(f"地址段超出 0-255: {text!r}")
        octets.append(value)
    a, b, c, d = octets
    return a, b, c, d


def next_ip(ip: str) -> str:
    """
    计算下一个地址。
    10.0.0.254 -> 10.0.1.0，10.0.254.254 -> 10.1.0.0。
    :raises ParseError / AddressSpaceExhaustedError
    """
    a, b, c, d = parse_ip(ip)

    d += 1
    if d > _MAX_OCTET:
        d = 0
        c += 1
    if c > _MAX_OCTET:
        c = 0
        b += 1
    if b > _MAX_OCTET:
        b = 0
        a += 1
    if a > _MAX_OCTET:
        raise AddressSpaceExhaustedError(f"地址空间已耗尽（当前游标 {ip}）")

    return f"{a}.{b}.{c}.{d}"


class AddressAllocator:
    """
    :param store: 持久化存储，由调用方持有并负责关闭。
    :param default_ip: 冷启动时的第一个地址。
    :param network: 可选的地址块（CIDR），分配结果离开该块即视为耗尽。
    """

    def __init__(self, store: DurableStore, default_ip: str, network: Optional[str] = None) -> None:
        octets = parse_ip(default_ip)
        if max(octets) > _MAX_OCTET:
            raise ParseError(f"默认地址不能包含 255: {default_ip}")
        self._store = store
        self.default_ip = ".".join(str(o) for o in octets)
        self.network = ipaddress.IPv4Network(network, strict=False) if network else None
        if self.network is not None and ipaddress.IPv4Address(self.default_ip) not in self.network:
            raise ParseError(f"默认地址 {self.default_ip} 不在地址块 {self.network} 内")
        self._exhausted = False

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    def next_address(self) -> str:
        """
        分配下一个地址并持久化游标。
        :raises ParseError / AddressSpaceExhaustedError / StoreError
        """
        if self._exhausted:
            raise AddressSpaceExhaustedError("地址空间已耗尽，停止分配")

        try:
            with self._store.update() as txn:
                current = txn.get(CURSOR_KEY)
                if current is None:
                    logger.info(f"未找到地址游标，写入默认地址 {self.default_ip}")
                    ip = self.default_ip
                else:
                    try:
                        cursor = current.decode("ascii")
                    except UnicodeDecodeError as e:
                        raise ParseError(f"地址游标不是 ASCII: {current!r}") from e
                    ip = next_ip(cursor)
                    self._check_in_network(ip, cursor)
                txn.set(CURSOR_KEY, ip.encode("ascii"))
        except AddressSpaceExhaustedError:
            self._exhausted = True
            logger.critical("地址空间已耗尽，后续签发将全部失败")
            raise

        logger.debug(f"分配地址: {ip}")
        return ip

    def _check_in_network(self, ip: str, cursor: str) -> None:
        if self.network is not None and ipaddress.IPv4Address(ip) not in self.network:
            raise AddressSpaceExhaustedError(f"地址块 {self.network} 已耗尽（当前游标 {cursor}）")
