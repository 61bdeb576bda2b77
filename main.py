import asyncio
import logging
import signal

from custody.config import Settings
from custody.errors import ConfigError
from custody.service import CustodyService
from transports.telegram_bot import TelegramTransport


async def main():
    try:
        settings = Settings.from_env()
    except ConfigError as exc:
        raise SystemExit(f"Missing required environment variables: {exc}")
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s :: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    service = CustodyService.from_settings(settings)
    telegram_transport = TelegramTransport(service, settings.bot_token)

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    telegram_task = asyncio.create_task(telegram_transport.start())

    await stop_event.wait()

    await telegram_transport.stop()
    await telegram_task
    await service.close()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
