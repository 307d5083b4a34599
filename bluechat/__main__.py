"""Run the chat service with its JSON API: ``python -m bluechat [config.json]``."""

import asyncio
import sys
from pathlib import Path

from loguru import logger

from bluechat.chat.api import ChatAPI
from bluechat.chat.service import ChatService
from bluechat.config.loader import load_config
from bluechat.providers.smart_reply import SmartReplyService


async def serve(config_path: Path | None = None) -> None:
    config = load_config(config_path)
    service = ChatService(config)
    service.start()
    await service.scan()

    api = ChatAPI(
        service,
        SmartReplyService.from_config(config.smart_reply),
        host=config.api.host,
        port=config.api.port,
    )
    await api.start()
    try:
        await asyncio.Event().wait()
    finally:
        logger.info("Shutting down bluechat...")
        await api.stop()
        service.shutdown()


def main() -> None:
    config_path = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    try:
        asyncio.run(serve(config_path))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
