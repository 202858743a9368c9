#!/usr/bin/env python3
"""
Run a scripted partition hop against simulated collaborators.

Usage:
    # A hop to the partition the peer announces
    python -m partitionhop.main --scenario confirm

    # Peer in another domain, followed by a repeat invite
    python -m partitionhop.main --scenario cross-domain --log-level DEBUG

    # Custom settings
    python -m partitionhop.main --scenario retries --config my.yaml
"""

import argparse
import json
import sys

from partitionhop.sim.world import SimulatedWorld
from partitionhop.transition.state import TransitionConfig
from partitionhop.utils.config import Config
from partitionhop.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

SCENARIOS = ("confirm", "cross-domain", "no-response", "retries")


def parse_args():
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='partitionhop - simulated partition hop scenarios'
    )

    parser.add_argument(
        '--scenario',
        type=str,
        default='confirm',
        choices=SCENARIOS,
        help='Scenario to run (default: confirm)'
    )

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='YAML file merged over config/default.yaml'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: from configuration)'
    )

    parser.add_argument(
        '--log-format',
        type=str,
        default=None,
        choices=['json', 'console'],
        help='Log output format (default: from configuration)'
    )

    return parser.parse_args()


def run_confirm(world: SimulatedWorld) -> None:
    world.controller.request_transition()
    world.message("Host-Home", "[hop] Inviting you to partition 7")
    world.invite("Host-Home")
    world.run(2.0)
    world.oracle.rederive(7)
    world.run(5.0)


def run_cross_domain(world: SimulatedWorld) -> None:
    world.probe.peer_domains["Far"] = "outland"
    world.controller.request_transition()
    world.invite("Far")
    world.run(4.0)
    world.run(6.0)
    world.invite("Far")
    world.run(1.0)


def run_no_response(world: SimulatedWorld) -> None:
    world.controller.request_transition()
    world.run(26.0)


def run_retries(world: SimulatedWorld) -> None:
    world.controller.request_transition()
    max_retries = world.controller.config.max_retries
    for attempt in range(max_retries + 1):
        world.invite(f"Host{attempt}")
        world.oracle.rederive(world.controller.state.origin_partition or 3)
        world.run(10.5)
        world.run(world.controller.config.retry_arm_delay_s + 0.1)
        world.press_key()


RUNNERS = {
    "confirm": run_confirm,
    "cross-domain": run_cross_domain,
    "no-response": run_no_response,
    "retries": run_retries,
}


def main():
    """Main entry point."""
    args = parse_args()

    config = Config(args.config)

    configure_logging(
        log_level=args.log_level or config.get("logging.level", "INFO"),
        log_format=args.log_format or config.get("logging.format", "console"),
        log_output=config.get("logging.output", "stdout"),
    )

    try:
        transition_config = TransitionConfig.from_config(config)
    except (TypeError, ValueError) as e:
        logger.error("Invalid transition configuration", error=str(e))
        sys.exit(1)

    logger.info("Running scenario", scenario=args.scenario)

    world = SimulatedWorld(config=transition_config)
    RUNNERS[args.scenario](world)

    print()
    print(f"Scenario: {args.scenario}")
    print(f"Final phase: {world.controller.phase.value}")
    for text, style in world.sink.notifications:
        print(f"  [{style.value}] {text}")
    for peer, text in world.sink.whispers:
        print(f"  -> {peer}: {text}")
    print(json.dumps(world.monitor.get_summary(), indent=2))


if __name__ == '__main__':
    main()
