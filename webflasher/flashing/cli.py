"""
CLI Wrapper for the Firmware Flash Engine

Usage:
    webflasher-flash --project "Weather Station"
    python -m webflasher.flashing.cli --project "Weather Station" --port /dev/ttyUSB0 --erase-all

Or import:
    from webflasher.flashing.cli import flash_project
    result = asyncio.run(flash_project("Weather Station"))
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from webflasher.config import settings
from webflasher.core.logging import setup_logging
from webflasher.flashing.audio import AudioSequencer, CommandAudioPlayer, NullAudioPlayer
from webflasher.flashing.catalog import PageConfig, ProjectCatalog
from webflasher.flashing.engine import FirmwareFlashEngine, FlashProgress
from webflasher.flashing.firmware import FirmwareDownloader
from webflasher.flashing.telemetry import TelemetryClient
from webflasher.flashing.transport import EsptoolTransport

_LEVEL_PREFIX = {
    "error": "❌",
    "warning": "⚠️ ",
    "success": "✅",
}


def progress_callback(progress: FlashProgress):
    """Callback for progress updates"""
    print(f"[{progress.stage.value:11}] [{progress.percent:5.1f}%] {progress.label} {progress.status}")


def log_callback(message: str, level: str = "info"):
    """Callback for log messages"""
    prefix = _LEVEL_PREFIX.get(level, "  ")
    stream = sys.stderr if level == "error" else sys.stdout
    print(f"{prefix} {message}", file=stream)


def prompt_callback(visible: bool):
    if visible:
        print("=" * 60)
        print("  Hold the BOOT button on your board now")
        print("=" * 60)


def build_engine(
    page_config: PageConfig,
    port: str = "",
    baud: Optional[int] = None,
    language: Optional[str] = None,
) -> FirmwareFlashEngine:
    """Wire transport, downloader, audio and telemetry from settings"""
    if page_config.audio_feedback.enabled and settings.AUDIO_PLAYER_COMMAND:
        player = CommandAudioPlayer(settings.AUDIO_PLAYER_COMMAND, sounds_root=Path(settings.PAGE_CONFIG).parent)
    else:
        player = NullAudioPlayer()

    audio = AudioSequencer(
        player,
        config=page_config.audio_feedback,
        language=language or settings.LANGUAGE or page_config.default_language,
    )
    telemetry = TelemetryClient(
        settings.TELEMETRY_URL,
        enabled=settings.ANALYTICS_ENABLED and page_config.analytics,
    )
    engine = FirmwareFlashEngine(
        transport=EsptoolTransport(port=port or settings.SERIAL_PORT, esptool_command=settings.ESPTOOL_COMMAND),
        downloader=FirmwareDownloader(settings.FIRMWARE_BASE_URL),
        audio=audio,
        telemetry=telemetry,
        baud=baud or settings.FLASH_BAUD,
    )
    engine.set_callbacks(on_progress=progress_callback, on_log=log_callback, on_prompt=prompt_callback)
    return engine


async def flash_project(
    project_name: str,
    projects_config: Optional[str] = None,
    page_config_path: Optional[str] = None,
    port: str = "",
    baud: Optional[int] = None,
    erase_all: bool = False,
    language: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Flash one catalog project to the connected board.

    Returns:
        The engine result dict
    """
    catalog = ProjectCatalog.load(projects_config or settings.PROJECTS_CONFIG)
    page_config = PageConfig.load(page_config_path or settings.PAGE_CONFIG)
    engine = build_engine(page_config, port=port, baud=baud, language=language)

    project = catalog.find(project_name)
    print(f"Starting flash of {project_name}")
    print("-" * 60)

    result = await engine.execute_flash(project, erase_all=erase_all)

    # Let queued cues and the telemetry report finish before exiting
    await engine.audio.join()
    await engine.telemetry.flush()

    print("-" * 60)
    if result["success"]:
        print(f"✅ Flash completed successfully! ({result['chip']})")
    else:
        print(f"❌ Flash failed [{result['category'].value}]: {result['error']}")

    return result


def main():
    """CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Flash ESP32 firmware from the project catalog",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List flashable projects
  webflasher-flash --list

  # Flash a project on the auto-detected port
  webflasher-flash --project "Weather Station"

  # Flash on a given port, erasing the whole chip first
  webflasher-flash --project "Weather Station" --port /dev/ttyUSB0 --erase-all
        """,
    )

    parser.add_argument("--project", help="Project name from the catalog")
    parser.add_argument("--list", action="store_true", help="List enabled projects and exit")
    parser.add_argument(
        "--projects-config",
        help=f"Project catalog (default: {settings.PROJECTS_CONFIG})",
    )
    parser.add_argument(
        "--page-config",
        help=f"Page config with audio/analytics settings (default: {settings.PAGE_CONFIG})",
    )
    parser.add_argument("--port", default="", help="Serial port (default: auto-detect)")
    parser.add_argument("--baud", type=int, help=f"Baud rate (default: {settings.FLASH_BAUD})")
    parser.add_argument("--erase-all", action="store_true", help="Erase entire flash before writing")
    parser.add_argument("--lang", help="Language code used for audio cues")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()
    setup_logging(log_format="text", level="DEBUG" if args.verbose else "WARNING")

    if args.list:
        catalog = ProjectCatalog.load(args.projects_config or settings.PROJECTS_CONFIG)
        for project in catalog.enabled_projects:
            print(f"{project.name:30} {project.describe(args.lang or settings.LANGUAGE)}")
        sys.exit(0)

    if not args.project:
        parser.error("--project is required unless --list is given")

    try:
        result = asyncio.run(
            flash_project(
                args.project,
                projects_config=args.projects_config,
                page_config_path=args.page_config,
                port=args.port,
                baud=args.baud,
                erase_all=args.erase_all,
                language=args.lang,
            )
        )
    except Exception as e:
        # ProjectNotSelectable, catalog errors
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(2)

    sys.exit(0 if result["success"] else 1)


if __name__ == "__main__":
    main()
