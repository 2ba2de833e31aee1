"""
Firebase Config Generator.

Rewrites the repository's ``firebase.json`` into a per-session copy: every
emulator gets the session's port, import/export point at the session's
private data directory, and source paths go through the session's
``worktree-root`` symlink so the generated file does not depend on where the
workspace lives.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from dev_cli.qa.errors import ConfigurationError
from dev_cli.qa.ports import Ports

logger = logging.getLogger(__name__)

FUNCTIONS_SOURCE = "worktree-root/packages/functions"
HOSTING_PUBLIC = "worktree-root/public"


@dataclass(frozen=True)
class FirebaseConfigRequest:
    template_path: Path
    output_path: Path
    data_dir: Path
    ports: Ports


def render_firebase_config(template: Dict[str, Any], data_dir: Path, ports: Ports) -> Dict[str, Any]:
    """Apply session ports and paths to a parsed template (returns a new dict)."""
    config = json.loads(json.dumps(template))

    emulators = config.setdefault("emulators", {})
    if not isinstance(emulators, dict):
        raise ConfigurationError("firebase.json emulators field must be an object")

    def merged(name: str, **fields: Any) -> Dict[str, Any]:
        existing = emulators.get(name)
        entry = dict(existing) if isinstance(existing, dict) else {}
        entry.update(fields)
        return entry

    emulators["functions"] = merged("functions", port=ports.functions)
    emulators["firestore"] = merged("firestore", port=ports.firestore)
    emulators["hosting"] = merged("hosting", enabled=True, port=ports.hosting)
    emulators["ui"] = merged("ui", enabled=True, port=ports.ui)
    emulators["hub"] = {"port": ports.hub}
    emulators["logging"] = {"port": ports.logging}
    emulators["import"] = str(data_dir)
    emulators["export_on_exit"] = str(data_dir)
    emulators["singleProjectMode"] = True

    functions = config.get("functions")
    if not isinstance(functions, dict):
        functions = {}
        config["functions"] = functions
    functions["source"] = FUNCTIONS_SOURCE

    hosting = config.get("hosting")
    if not isinstance(hosting, dict):
        hosting = {}
        config["hosting"] = hosting
    hosting["public"] = HOSTING_PUBLIC

    return config


def write_firebase_config(request: FirebaseConfigRequest) -> Path:
    """
    Generate the session's firebase.json from the repository template.

    Raises:
        ConfigurationError: If the template is missing, not JSON, or not an object
    """
    try:
        raw = Path(request.template_path).read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigurationError(f"Firebase template not found: {request.template_path}")

    try:
        template = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Could not parse {request.template_path}: {e}")

    if not isinstance(template, dict):
        raise ConfigurationError(f"{request.template_path} must contain a JSON object")

    config = render_firebase_config(template, request.data_dir, request.ports)

    output_path = Path(request.output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")
    logger.debug(f"Wrote {output_path}")
    return output_path
