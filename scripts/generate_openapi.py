#!/usr/bin/env python3
"""Generate the OpenAPI spec from the FastAPI application.

Usage:
    python scripts/generate_openapi.py [OUTPUT]

Outputs to: docs/api.yaml
"""

import sys
from pathlib import Path

# Ensure project root is in path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import yaml  # noqa: E402

from appforge import __version__  # noqa: E402
from appforge.api.main import create_app  # noqa: E402
from appforge.settings import Settings  # noqa: E402

OUTPUT = Path("docs/api.yaml")


def build_schema() -> dict:
    # Never reads .env; the schema does not depend on deployment settings.
    app = create_app(Settings(_env_file=None, environment="testing"))
    schema = app.openapi()

    schema["info"] = {
        "title": "AppForge API",
        "description": (
            "Sandboxed execution engine for generated applications.\n\n"
            "## Lifecycle\n\n"
            "`POST /execute` validates a bundle against the security policy, writes it "
            "to a fresh workspace and starts it under process or container isolation. "
            "Sandboxes move from `starting` to `running`, and end as `stopped` or "
            "`error`. Every sandbox is stopped and its workspace deleted when its "
            "execution timeout expires.\n\n"
            "## Errors\n\n"
            "Errors use one envelope: `{\"error\": {code, message, type, correlation_id}}`. "
            "Policy rejections (422) also list every violation.\n"
        ),
        "version": __version__,
        "license": {"name": "MIT"},
    }

    schema["servers"] = [
        {"url": "http://localhost:8070", "description": "Local development"},
    ]
    return schema


def main(output: Path = OUTPUT) -> None:
    schema = build_schema()

    output.parent.mkdir(parents=True, exist_ok=True)
    with open(output, "w") as f:
        yaml.dump(
            schema,
            f,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
            width=120,
        )

    path_count = len(schema["paths"])
    schema_count = len(schema.get("components", {}).get("schemas", {}))
    print(f"✅ OpenAPI spec written to {output}")
    print(f"   {path_count} paths, {schema_count} schemas")


if __name__ == "__main__":
    main(Path(sys.argv[1]) if len(sys.argv) > 1 else OUTPUT)
