"""
vendor_marketplace/services/marketplace/lifecycle.py

起動・停止のライフサイクル管理

状態遷移: stopped → starting → started → stopping → stopped

- 同時に呼ばれた start() は1回の起動処理にまとめられ、
  後から来た呼び出しは同じ起動の完了を待つ
- 起動中の stop()、停止中の start() は LifecycleConflict
- 起動に失敗した場合は stopped に戻し、起動済みのコンポーネントを停止する
"""

import asyncio
from enum import Enum
from typing import Any, List, Optional

from vendor_marketplace.common.errors import LifecycleConflict, MarketplaceError, UpstreamFailure
from vendor_marketplace.common.logger import get_logger

logger = get_logger(__name__)


class LifecycleState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"


class LifecycleManager:
    """
    複数コンポーネント（start()/stop() を持つ）の起動・停止を1つの単位として扱う

    Args:
        components: 起動・停止するコンポーネント（ベンダーディレクトリ、Identity Providerなど）
        name: ログに出力する名前
    """

    def __init__(self, components: List[Any], name: str = "Marketplace"):
        self.components = components
        self.name = name
        self.state = LifecycleState.STOPPED
        self._transition: Optional[asyncio.Event] = None
        self._transition_error: Optional[BaseException] = None

    @property
    def is_started(self) -> bool:
        return self.state == LifecycleState.STARTED

    async def _await_transition(self):
        event = self._transition
        await event.wait()
        if self._transition_error is not None:
            raise self._transition_error

    async def start(self):
        if self.state == LifecycleState.STARTED:
            return
        if self.state == LifecycleState.STARTING:
            await self._await_transition()
            return
        if self.state == LifecycleState.STOPPING:
            raise LifecycleConflict(f"{self.name} is stopping")

        self.state = LifecycleState.STARTING
        self._transition = asyncio.Event()
        self._transition_error = None
        logger.info(f"[{self.name}] Starting")

        try:
            results = await asyncio.gather(
                *(component.start() for component in self.components),
                return_exceptions=True
            )
        except BaseException as e:
            # キャンセルされた起動も stopped に戻し、待機中の呼び出しに通知する
            try:
                await self._rollback([None] * len(self.components))
            finally:
                self._transition_error = UpstreamFailure(
                    f"{self.name} startup was interrupted", cause_message=repr(e)
                )
                self.state = LifecycleState.STOPPED
                self._transition.set()
            raise
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            await self._rollback(results)
            error = failures[0]
            if not isinstance(error, MarketplaceError):
                logger.error(f"[{self.name}] Startup failed: {error}", exc_info=error)
                error = UpstreamFailure(f"{self.name} failed to start", cause_message=str(error))
            self._transition_error = error
            self.state = LifecycleState.STOPPED
            self._transition.set()
            raise error

        self.state = LifecycleState.STARTED
        self._transition.set()
        logger.info(f"[{self.name}] Started")

    async def _rollback(self, results):
        for component, result in zip(self.components, results):
            if isinstance(result, BaseException):
                continue
            try:
                await component.stop()
            except Exception as e:
                logger.warning(f"[{self.name}] Failed to stop {type(component).__name__} during rollback: {e}")

    async def stop(self):
        if self.state == LifecycleState.STOPPED:
            return
        if self.state == LifecycleState.STOPPING:
            await self._await_transition()
            return
        if self.state == LifecycleState.STARTING:
            raise LifecycleConflict(f"{self.name} is starting")

        self.state = LifecycleState.STOPPING
        self._transition = asyncio.Event()
        self._transition_error = None
        logger.info(f"[{self.name}] Stopping")

        try:
            results = await asyncio.gather(
                *(component.stop() for component in self.components),
                return_exceptions=True
            )
        except BaseException as e:
            self._transition_error = UpstreamFailure(
                f"{self.name} shutdown was interrupted", cause_message=repr(e)
            )
            raise
        finally:
            self.state = LifecycleState.STOPPED
            self._transition.set()

        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.error(f"[{self.name}] Stopped with errors: {failures[0]}", exc_info=failures[0])
            raise UpstreamFailure(f"{self.name} failed to stop cleanly", cause_message=str(failures[0]))
        logger.info(f"[{self.name}] Stopped")
