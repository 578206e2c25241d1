"""
YAML helpers for offline inspection of what the operator would apply.

Example:
    >>> ms = load_music_service(open("radio.yaml").read())
    >>> print(render_manifests(ms, get_engine("mariadb")))
"""
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from music_operator.exceptions import ValidationError
from music_operator.models.music_service import KIND, MusicService
from music_operator.services.database_engine import DatabaseEngine
from music_operator.services.resource_builder import ResourceBuilder


class _NoAliasDumper(yaml.SafeDumper):
    """Dumper that never emits anchors and indents nested lists."""

    def increase_indent(self, flow=False, *args, **kwargs):
        return super().increase_indent(flow=flow, indentless=False)

    def ignore_aliases(self, data):
        return True


def load_music_service(text: str) -> MusicService:
    """
    Parse a YAML MusicService document.

    Raises:
        ValidationError: If the text is not YAML, not a MusicService, or its
            spec does not validate
    """
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML: {e}") from e

    if not isinstance(document, dict) or document.get("kind", KIND) != KIND:
        raise ValidationError(f"Expected a {KIND} document")

    try:
        return MusicService.model_validate(document)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {KIND}: {e.error_count()} error(s)",
            details={"errors": [err["msg"] for err in e.errors()]},
        ) from e


def descriptor_documents(ms: MusicService, engine: DatabaseEngine) -> List[Dict[str, Any]]:
    """Desired child objects, in apply order."""
    return [descriptor.body for descriptor in ResourceBuilder(engine).build(ms)]


def render_manifests(ms: MusicService, engine: DatabaseEngine, kinds: Optional[List[str]] = None) -> str:
    """
    Render the desired children as a multi-document YAML stream.

    Args:
        ms: Parent resource
        engine: Database engine strategy
        kinds: Only render these kinds (all when omitted)
    """
    documents = descriptor_documents(ms, engine)
    if kinds:
        documents = [doc for doc in documents if doc.get("kind") in kinds]
    return yaml.dump_all(documents, Dumper=_NoAliasDumper, sort_keys=False, default_flow_style=False)
