"""Parser for stack workflow files (YAML or JSON)."""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from models.workflow import WorkflowSpec


class WorkflowParseError(Exception):
    """Raised when workflow parsing fails."""

    pass


class WorkflowParser:
    """Parses workflow documents into WorkflowSpec."""

    YAML_SUFFIXES = (".yaml", ".yml")

    def parse_file(self, path: str) -> WorkflowSpec:
        """Parse workflow from a YAML or JSON file."""
        if not path:
            raise ValueError("path is required")

        file_path = Path(path)
        if not file_path.exists():
            raise WorkflowParseError(f"File not found: {path}")

        try:
            content = file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise WorkflowParseError(f"Failed to read {path}: {e}") from e

        if file_path.suffix.lower() == ".json":
            return self.parse_json(content)
        # YAML is a superset of JSON, so anything else goes through the YAML loader
        return self.parse_yaml(content)

    def parse_yaml(self, content: str) -> WorkflowSpec:
        """Parse workflow from a YAML string."""
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Invalid YAML: {e}") from e
        return self.parse_dict(data)

    def parse_json(self, content: str) -> WorkflowSpec:
        """Parse workflow from a JSON string."""
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Invalid JSON: {e}") from e
        return self.parse_dict(data)

    def parse_dict(self, data: Any) -> WorkflowSpec:
        """Parse workflow from an already-decoded document."""
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow document must be a mapping")

        agents = data.get("agents")
        if agents is not None and not isinstance(agents, list):
            raise WorkflowParseError("agents must be a list")

        try:
            return WorkflowSpec.model_validate(data)
        except ValidationError as e:
            raise WorkflowParseError(f"Invalid workflow: {e}") from e
