from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace

from .config import LinkConfig
from .logging_config import setup_logging


logger = logging.getLogger("studiolink")


async def run(config: LinkConfig) -> int:
	from .net.signaling_client import SignalingClient
	from .rtc.media_engine import AiortcMediaEngine
	from .session.controller import SessionCallbacks, SessionController
	from .session.stats import NetworkQuality

	failed = asyncio.Event()

	async def on_log(message: str) -> None:
		logger.info("%s", message)

	async def on_producer_id(producer_id) -> None:
		if producer_id:
			logger.info("on air as producer %s", producer_id)

	async def on_network_quality(quality: NetworkQuality) -> None:
		logger.debug("%s", quality.summary())

	async def on_warning(message: str) -> None:
		logger.warning("%s", message)

	async def on_error(reason: str) -> None:
		logger.error("session failed: %s", reason)
		failed.set()

	signaling = SignalingClient(
		config.server_url,
		base_delay=config.signaling_base_delay,
		max_reconnect_attempts=config.max_signaling_reconnects,
		connect_timeout=config.connect_timeout,
	)
	engine = AiortcMediaEngine(config)
	controller = SessionController(
		signaling,
		engine,
		config,
		SessionCallbacks(
			on_log=on_log,
			on_producer_id=on_producer_id,
			on_network_quality=on_network_quality,
			on_warning=on_warning,
			on_error=on_error,
		),
	)

	try:
		await controller.connect(config.room_id, config.peer_id or None)
		await failed.wait()
		return 1
	finally:
		await controller.close()


def main(argv: list[str] | None = None) -> int:
	defaults = LinkConfig.from_env()

	parser = argparse.ArgumentParser(description="studiolink audio link client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use STUDIOLINK_LOG_LEVEL.",
	)
	parser.add_argument("--server-url", default=defaults.server_url, help="WebSocket signaling URL")
	parser.add_argument("--room", default=defaults.room_id, help="Room to join")
	parser.add_argument("--peer-id", default=defaults.peer_id, help="Peer id announced on join")
	parser.add_argument(
		"--mic-device",
		default=defaults.mic_device,
		help="ffmpeg capture device (e.g. 'default' or 'hw:1'); falls back to pulse, then alsa",
	)
	parser.add_argument("--mic-format", default=defaults.mic_format, help="ffmpeg input format for --mic-device")
	parser.add_argument("--no-playback", action="store_true", help="Do not play remote audio")
	args = parser.parse_args(argv)

	setup_logging(args.log_level)

	config = replace(
		defaults,
		server_url=args.server_url,
		room_id=args.room,
		peer_id=args.peer_id,
		mic_device=args.mic_device,
		mic_format=args.mic_format,
		playback_enabled=defaults.playback_enabled and not args.no_playback,
	)

	try:
		return asyncio.run(run(config))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
