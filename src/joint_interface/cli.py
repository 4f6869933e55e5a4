"""
SCARA Joint Control - Command Line Entry Point
===============================================
Loads a fleet description from YAML, brings the joints up over the shared
serial line and runs one whole-arm operation:

- ports:             list the serial ports present on this machine
- status:            read and print every joint position and velocity
- check-orientation: enable the drivers and run the orientation self-check
- move:              enable the drivers and command joint positions
- home:              home a single joint against its end stop
- stop:              stop every motor

Paths are resolved against the working directory. The fleet is always
de-initialized (motors de-energized, port closed) before the process exits.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

import pydantic
import yaml
from loguru import logger

from . import __version__
from .errors import JointError
from .fleet import JointFleet
from .joint import HOMING_TIMEOUT_S
from .models import FleetConfig, HomingDirection, StopMode
from .transport import SerialTransport


DEFAULT_CONFIG = Path("config") / "joints.yaml"
DEFAULT_LOG_DIR = Path("logs")


class JointApplication:
    """
    Wraps a JointFleet built from a configuration file.
    """

    def __init__(self, config_path: Optional[Path] = None, port: Optional[str] = None):
        """
        Args:
            config_path: Path to the fleet YAML file
            port: Serial port overriding the configured one
        """
        self.config_path = config_path or DEFAULT_CONFIG
        self.config = FleetConfig.from_yaml(self.config_path)
        if port:
            self.config.serial.port = port

        self.fleet = JointFleet.from_config(self.config)
        logger.info(f"SCARA joint control v{__version__}: {', '.join(self.fleet.names)}")

    def start(self) -> None:
        self.fleet.init()

    def stop(self) -> None:
        failures = self.fleet.deinit()
        for name, errors in failures.items():
            for error in errors:
                logger.warning(f"{name}: {error}")

    def enable(self) -> None:
        self.fleet.enables(self.config.drive_current, self.config.hold_current)

    def print_status(self) -> None:
        positions = self.fleet.get_positions()
        velocities = self.fleet.get_velocities()

        print("\n" + "=" * 48)
        print(f"  {'joint':<16}{'position':>14}{'velocity':>16}")
        print("=" * 48)
        for joint, position, velocity in zip(self.fleet, positions, velocities):
            print(f"  {joint.name:<16}{position:>14.2f}{velocity:>16.2f}")
        print("=" * 48 + "\n")

    def check_orientation(self, angle: float) -> None:
        self.enable()
        self.fleet.check_orientations(angle, timeout=self.config.orientation_timeout_s)
        logger.success("Orientation check passed on all joints")

    def move(self, positions: List[float]) -> None:
        self.enable()
        self.fleet.set_positions(positions)

    def home(
        self,
        name: str,
        direction: HomingDirection,
        rpm: int,
        sensitivity: int,
        current: int,
        timeout: float,
    ) -> None:
        self.enable()
        self.fleet.home(name, direction, rpm, sensitivity, current, timeout=timeout)

    def stop_motors(self, mode: StopMode) -> None:
        self.fleet.stops(mode)


def print_ports() -> None:
    """Print the serial ports a fleet could be opened on."""
    ports = SerialTransport.list_available_ports()
    if not ports:
        print("No serial ports found")
        return
    for info in ports:
        print(f"  {info['device']:<20}{info['description']} ({info['manufacturer']})")


def setup_logging(verbose: bool = False, log_dir: Path = DEFAULT_LOG_DIR) -> None:
    """Configure logging."""
    logger.remove()  # Remove default handler

    level = "DEBUG" if verbose else "INFO"

    # Console handler with custom format
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True
    )

    # File handler with wire-level dumps
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / "scara_joints_{time}.log",
        rotation="10 MB",
        retention="7 days",
        level="TRACE" if verbose else "DEBUG"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scara-joints",
        description="SCARA joint control over the shared serial bus"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help=f"Path to fleet configuration file (default: ./{DEFAULT_CONFIG})"
    )
    parser.add_argument(
        "--port", "-p",
        default=None,
        help="Serial port (overrides the configuration)"
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=DEFAULT_LOG_DIR,
        help="Directory for log files"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("ports", help="List available serial ports")

    commands.add_parser("status", help="Print joint positions and velocities")

    orientation = commands.add_parser("check-orientation", help="Run the orientation self-check")
    orientation.add_argument("--angle", type=float, default=10.0, help="Test rotation in motor degrees")

    move = commands.add_parser("move", help="Command joint positions")
    move.add_argument("positions", type=float, nargs="+", help="One target per joint, in joint units")

    home = commands.add_parser("home", help="Home one joint")
    home.add_argument("joint", help="Joint name")
    home.add_argument("--direction", choices=["ccw", "cw"], default="ccw")
    home.add_argument("--rpm", type=int, default=30)
    home.add_argument("--sensitivity", type=int, default=0)
    home.add_argument("--current", type=int, default=30)
    home.add_argument(
        "--timeout", type=float, default=HOMING_TIMEOUT_S,
        help="Seconds to wait for the end stop to be reached"
    )

    stop = commands.add_parser("stop", help="Stop all motors")
    stop.add_argument("--soft", action="store_true", help="Decelerate instead of stopping hard")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    # Setup logging
    setup_logging(args.verbose, args.log_dir)

    if args.command == "ports":
        print_ports()
        return 0

    try:
        app = JointApplication(config_path=args.config, port=args.port)
    except (OSError, yaml.YAMLError, pydantic.ValidationError, JointError) as e:
        logger.error(f"Cannot load configuration: {e}")
        return 1

    try:
        app.start()

        if args.command == "status":
            app.print_status()
        elif args.command == "check-orientation":
            app.check_orientation(args.angle)
        elif args.command == "move":
            app.move(args.positions)
        elif args.command == "home":
            app.home(
                args.joint,
                HomingDirection[args.direction.upper()],
                args.rpm,
                args.sensitivity,
                args.current,
                args.timeout,
            )
        elif args.command == "stop":
            app.stop_motors(StopMode.SOFT if args.soft else StopMode.HARD)

    except JointError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    finally:
        app.stop()

    return 0
