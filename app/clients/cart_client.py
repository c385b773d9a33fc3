"""购物车客户端

浏览器购物车与预占服务之间的约定：本地购物车只是预占成功结果的镜像，
预占失败时本地状态保持不变；移除商品和清空购物车即使释放失败也照常移除；
下单确认后清空购物车并更换会话ID，下一个购物车从干净状态开始。
"""

import logging
import random
import string
import time
from typing import Dict, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8000"
ACTIONS_PATH = "/api/v1/inventory/actions"

CartKey = Tuple[int, Optional[int]]


def generate_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


class CartError(Exception):
    """预占服务返回的错误，kind 与服务端 error 字段一致"""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class CartClient:
    """单个浏览器购物车"""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        session_id: Optional[str] = None,
        http: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id or generate_session_id()
        self.http = http or requests.Session()
        self.timeout = timeout
        self.items: Dict[CartKey, int] = {}

    def _call(self, action: str, **payload) -> dict:
        body = {"action": action, **{k: v for k, v in payload.items() if v is not None}}
        try:
            response = self.http.post(
                f"{self.base_url}{ACTIONS_PATH}",
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise CartError("store_error", f"库存服务不可用: {str(e)}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400 or not data.get("success", False):
            raise CartError(
                data.get("error", "store_error"),
                data.get("message") or f"库存服务返回 {response.status_code}",
            )
        return data

    def add_item(self, product_id: int, quantity: int = 1, variation_id: Optional[int] = None) -> int:
        """加购：预占 当前数量 + quantity，成功后才更新本地购物车"""
        key = (product_id, variation_id)
        target = self.items.get(key, 0) + quantity
        self._call(
            "reserve_cart",
            session_id=self.session_id,
            product_id=product_id,
            quantity=target,
            variation_id=variation_id,
        )
        self.items[key] = target
        return target

    def update_quantity(self, product_id: int, quantity: int, variation_id: Optional[int] = None) -> None:
        if quantity <= 0:
            self.remove_item(product_id, variation_id)
            return
        self._call(
            "reserve_cart",
            session_id=self.session_id,
            product_id=product_id,
            quantity=quantity,
            variation_id=variation_id,
        )
        self.items[(product_id, variation_id)] = quantity

    def remove_item(self, product_id: int, variation_id: Optional[int] = None) -> None:
        try:
            self._call(
                "release_cart",
                session_id=self.session_id,
                product_id=product_id,
                variation_id=variation_id,
            )
        except CartError as e:
            # 预占会在过期后被清理任务回收
            logger.warning(f"释放预占失败，仍从购物车移除: product_id={product_id}, error={e.message}")
        self.items.pop((product_id, variation_id), None)

    def clear_cart(self) -> None:
        for product_id, variation_id in list(self.items):
            self.remove_item(product_id, variation_id)
        self.items.clear()

    def complete_order(self, order_id: str) -> dict:
        """下单确认：扣减库存、清空购物车并更换会话ID"""
        data = self._call("process_order", session_id=self.session_id, order_id=order_id)
        self.items.clear()
        self.session_id = generate_session_id()
        return data

    @property
    def total_items(self) -> int:
        return sum(self.items.values())
