import argparse
import json
import logging
import signal
import sys
from pathlib import Path

from . import config
from . import message
from .network import TrafficNetwork

# Simulated seconds between checks for Ctrl+C
RUN_SLICE = 0.25


def configure_logging(level, log_name="traffic_control"):
    # ----------------------------
    # Logging: console + log/ folder
    # ----------------------------
    log_dir = Path.cwd() / "log"
    log_dir.mkdir(parents=True, exist_ok=True)

    log_format = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()  # prevent duplicate logs if main() is run multiple times

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(log_format))

    file_path = log_dir / f"{log_name}.log"
    file_handler = logging.FileHandler(file_path, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(log_format))

    root.addHandler(console_handler)
    root.addHandler(file_handler)

    logging.getLogger(__name__).info(f"Logging to file: {file_path}")
    return file_path


def format_status(network):
    snapshot = network.snapshot()
    online = sum(1 for n in snapshot.nodes if n.status is message.NodeStatus.ONLINE)
    lights = ", ".join(f"{n.name}={n.state.name}({n.timing.green:g}/{n.timing.red:g})"
                       for n in snapshot.nodes)
    return (f"t={network.scheduler.now():.1f}s nodes={online}/{len(snapshot.nodes)} "
            f"messages={snapshot.total_messages} rush_hour={snapshot.rush_hour_active} [{lights}]")


def advance(network, duration, realtime=False, interrupted=()):
    """Run the network for ``duration`` seconds in short slices, stopping early once ``interrupted`` is non-empty."""
    end = network.scheduler.now() + duration
    while not interrupted and network.scheduler.now() < end:
        network.run_for(min(RUN_SLICE, end - network.scheduler.now()), realtime=realtime)


def build_parser():
    parser = argparse.ArgumentParser(description="Simulated distributed traffic control network")
    parser.add_argument("--nodes", type=int, default=4,
                        help=f"Number of preset intersections to add (max {len(config.INTERSECTION_PRESETS)})")
    parser.add_argument("--duration", type=float, default=60.0, help="Simulated seconds to run")
    parser.add_argument("--realtime", action="store_true", help="Pace the simulation with the wall clock")
    parser.add_argument("--rush-hour", action="store_true", help="Enable rush hour traffic from the start")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducible runs")
    parser.add_argument("--status-interval", type=float, default=5.0,
                        help="Simulated seconds between status lines")
    parser.add_argument("--json", action="store_true", help="Print the final snapshot as JSON")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging verbosity")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging(getattr(logging, args.log_level))
    log = logging.getLogger(__name__)

    network = TrafficNetwork(seed=args.seed)
    network.start()
    network.add_presets(max(0, args.nodes))
    if args.rush_hour:
        network.set_rush_hour(True)

    # Handle graceful shutdown on Ctrl+C
    interrupted = []

    def shutdown(signum, frame):
        log.info("Shutting down network...")
        interrupted.append(signum)

    previous_handler = signal.signal(signal.SIGINT, shutdown)

    # Periodically log/print network status
    end = network.scheduler.now() + args.duration
    try:
        while not interrupted and network.scheduler.now() < end:
            step = min(args.status_interval, end - network.scheduler.now())
            advance(network, step, realtime=args.realtime, interrupted=interrupted)
            print(format_status(network))
    finally:
        network.stop()
        signal.signal(signal.SIGINT, previous_handler)

    snapshot = network.snapshot()
    if args.json:
        print(json.dumps(message.to_dict(snapshot), indent=2))
    else:
        print(f"Finished at t={network.scheduler.now():.1f}s, {snapshot.total_messages} messages exchanged")
    return 0


if __name__ == "__main__":
    sys.exit(main())
