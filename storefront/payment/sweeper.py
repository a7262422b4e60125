"""
Payment — 期限切れスイーパー

バックグラウンドタスクとして一定間隔で PaymentCoordinator.sweep() を実行する。
放置されたチェックアウトのインテントを expired にし、在庫の引き当てを解放する。
"""

import asyncio
import logging

from .coordinator import PaymentCoordinator

logger = logging.getLogger(__name__)


async def run_sweeper(
    coordinator: PaymentCoordinator,
    shutdown_event: asyncio.Event,
    interval: float = 60.0,
) -> None:
    """shutdown_event がセットされるまで interval 秒ごとに掃除する。"""
    logger.info("Expiry sweeper started (every %.0fs)", interval)
    while not shutdown_event.is_set():
        try:
            await coordinator.sweep()
        except Exception:
            logger.exception("Sweep failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Expiry sweeper stopped")
