"""Writes one server config per instance for a local multi-instance setup.

Every instance shares a Redis outbox and Redis broadcast channel, listens on
its own port, and carries a fixed instance id.
"""

import argparse
from pathlib import Path

import yaml


def instance_config(index: int, redis_url: str, base_port: int) -> dict:
    return {
        "listen": {"host": "0.0.0.0", "port": base_port + index},
        "auction": {
            "enforce_increment": True,
            "default_min_increment": 1,
            "gate": {"policy": "majority", "acceptors": 3, "accept_probability": 0.8},
        },
        "outbox": {
            "backend": "redis",
            "options": {"url": redis_url, "prefix": "bidhub:outbox"},
            "max_attempts": 5,
            "poll_interval_ms": 50,
        },
        "broadcast": {
            "instance_id": f"node-{index}",
            "channel": {"backend": "redis", "url": redis_url, "name": "bidhub:events"},
        },
    }


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--instances", type=int, default=2)
    parser.add_argument("--redis-url", default="redis://localhost:6379/0")
    parser.add_argument("--base-port", type=int, default=4000)
    parser.add_argument("--out", type=Path, default=Path("configs"))
    args = parser.parse_args()

    args.out.mkdir(parents=True, exist_ok=True)
    for index in range(args.instances):
        path = args.out / f"server-{index}.yaml"
        path.write_text(yaml.safe_dump(instance_config(index, args.redis_url, args.base_port), sort_keys=False))
        print(f"wrote {path}")


if __name__ == "__main__":
    main()
