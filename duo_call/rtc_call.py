"""Entry point for a duo-call party."""

import asyncio
import sys
import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from duo_call.call.coordinator import CallCoordinator
from duo_call.call.session import CallState, Session
from duo_call.config import get_config
from duo_call.engine import AiortcPeerEngine
from duo_call.exceptions import DeviceUnavailableError, SignalingChannelError
from duo_call.media import MediaCapture, RecorderSurface, VideoSurface
from duo_call.signaling.channel import SignalingChannel

COMMANDS_HELP = "Commands: m = mute/unmute, c = camera on/off, s = screen share, i = stats, q = leave"


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
    """Feed stdin lines into ``queue`` from a daemon thread."""

    def read():
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line.strip().lower())
        loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=read, name="duo-call-stdin", daemon=True).start()


async def handle_command(coordinator: CallCoordinator, command: str) -> bool:
    """Apply one interactive command.

    Returns:
        False once the user asked to leave, True otherwise
    """
    tracks = coordinator.tracks
    if command == "m":
        tracks.toggle_mute()
    elif command == "c":
        tracks.toggle_camera()
    elif command == "s":
        if tracks.is_screen_sharing:
            tracks.stop_screen_share()
        else:
            try:
                await tracks.start_screen_share()
            except DeviceUnavailableError as e:
                logger.error(f"Screen share unavailable: {e}")
    elif command == "i":
        snapshot = coordinator.stats.latest
        if snapshot is None:
            logger.info("No stats yet")
        else:
            logger.info(
                f"RTT {snapshot.round_trip_time_ms} ms | "
                f"out {snapshot.outgoing_bitrate_kbps} kbps | "
                f"in {snapshot.incoming_bitrate_kbps} kbps | path {snapshot.path_type}"
            )
    elif command == "q":
        await coordinator.leave()
        return False
    elif command:
        logger.info(COMMANDS_HELP)
    return True


async def _read_commands(coordinator: CallCoordinator):
    queue: asyncio.Queue = asyncio.Queue()
    _start_stdin_reader(asyncio.get_running_loop(), queue)
    logger.info(COMMANDS_HELP)
    while True:
        command = await queue.get()
        if command is None:
            return
        if not await handle_command(coordinator, command):
            return


async def _run(coordinator: CallCoordinator, interactive: bool):
    controls = asyncio.create_task(_read_commands(coordinator)) if interactive else None
    try:
        await coordinator.run()
    finally:
        if controls:
            controls.cancel()
        if coordinator.session.call_state is CallState.IDLE:
            await coordinator.discard()
        elif not coordinator.session.ended:
            await coordinator.leave()


def run_call(
    role: str,
    call_id: Optional[str] = None,
    server: Optional[str] = None,
    use_camera: bool = True,
    use_microphone: bool = True,
    record_dir: Optional[str] = None,
    interactive: bool = True,
):
    """Create a session for ``role`` and run the call until it ends.

    Args:
        role: Local role, "A" (offers) or "B" (answers).
        call_id: Call identifier shared by both parties. Defaults to config.
        server: Relay websocket URL. Defaults to config.
        use_camera: Capture the camera; a test pattern is sent otherwise.
        use_microphone: Capture the microphone; silence is sent otherwise.
        record_dir: Directory to record remote media into.
        interactive: Read mute/camera/screen/leave commands from stdin.
    """
    config = get_config()

    session = Session.create(role, call_id or config.call_id)
    coordinator = CallCoordinator(
        session=session,
        channel=SignalingChannel(server or config.signaling_websocket),
        engine=AiortcPeerEngine(ice_servers=config.ice_servers),
        capture=MediaCapture(
            use_camera=use_camera,
            use_microphone=use_microphone,
            devices=config.capture_devices,
            video_options=config.video_options or None,
        ),
        local_surface=VideoSurface("local"),
        remote_surface=RecorderSurface("remote", Path(record_dir) if record_dir else None),
        stats_interval=config.stats_interval,
    )
    logger.info(f"Session {session.session_id}: joining {session.call_id} as {session.local_role.value}")

    try:
        asyncio.run(_run(coordinator, interactive))
    except KeyboardInterrupt:
        logger.info("Call interrupted by user. Shutting down...")
    except DeviceUnavailableError as e:
        logger.error(f"Local media unavailable: {e}")
        return 1
    except SignalingChannelError as e:
        logger.error(f"Signaling failed: {e}")
        return 1
    finally:
        logger.info(f"Call finished ({session.call_state.name})")
    return 0
