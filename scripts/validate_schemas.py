"""Checks the bundled message schemas and the default server config."""

from pathlib import Path
import json

import yaml
from jsonschema import Draft202012Validator

from bidhub.config import parse_server_config


PACKAGE_DIR = Path(__file__).resolve().parent.parent / "bidhub"
SCHEMA_DIR = PACKAGE_DIR / "schemas"
SERVER_CONFIG = PACKAGE_DIR / "config" / "server.yaml"


def validate() -> None:
    for schema in sorted(SCHEMA_DIR.glob("*.json")):
        data = json.loads(schema.read_text())
        Draft202012Validator.check_schema(data)
        print(f"ok  {schema.name}")
    parse_server_config(yaml.safe_load(SERVER_CONFIG.read_text()) or {})
    print(f"ok  {SERVER_CONFIG.name}")


if __name__ == "__main__":
    validate()
