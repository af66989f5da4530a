"""
Kustomize overlay helpers — read and rewrite image tags.

Only the ``images`` transformer of a kustomization.yaml is touched:

    images:
      - name: ledger
        newName: ghcr.io/acme/ledger
        newTag: main-xyz999

An entry matches a service when its ``name`` is the service name or
its image repository. Edit keys have the form ``images[<service>].newTag``.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Mapping

import yaml

from gitops_promoter.core.errors import PolicyViolation
from gitops_promoter.core.models.promotion import ConfigEdit

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^images\[(?P<service>[^\]]+)\]\.newTag$")


def image_key(service: str) -> str:
    return f"images[{service}].newTag"


def parse_image_key(key: str) -> str:
    """Return the service name of an ``images[<service>].newTag`` key.

    Raises:
        PolicyViolation: For any other key — the engine only edits image tags.
    """
    match = _KEY_RE.match(key)
    if match is None:
        raise PolicyViolation(f"Refusing to edit '{key}': only images[*].newTag may change")
    return match.group("service")


def load_overlay(text: str, path: str = "kustomization.yaml") -> dict[str, Any]:
    try:
        doc = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise PolicyViolation(f"Overlay {path} is not valid YAML: {e}") from e
    if not isinstance(doc, dict):
        raise PolicyViolation(f"Overlay {path} is not a mapping")
    return doc


def _find_entry(doc: Mapping[str, Any], service: str, repository: str | None) -> dict | None:
    for entry in doc.get("images") or []:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        if name == service or (repository and name == repository):
            return entry
    return None


def read_image_tags(
    text: str,
    services: Mapping[str, str],
    path: str = "kustomization.yaml",
) -> dict[str, str | None]:
    """Current ``newTag`` per service; services with no entry are omitted.

    Args:
        text: kustomization.yaml contents.
        services: service name → image repository.
    """
    doc = load_overlay(text, path)
    tags: dict[str, str | None] = {}
    for service, repository in services.items():
        entry = _find_entry(doc, service, repository)
        if entry is not None:
            tag = entry.get("newTag")
            tags[service] = str(tag) if tag is not None else None
    return tags


def apply_edits(
    text: str,
    edits: Iterable[ConfigEdit],
    services: Mapping[str, str] | None = None,
    path: str = "kustomization.yaml",
) -> str:
    """Return the overlay with every edit applied.

    The result is re-parsed before it is returned so a mutation can never
    leave a syntactically broken overlay behind.
    """
    services = services or {}
    doc = load_overlay(text, path)

    for edit in edits:
        service = parse_image_key(edit.key)
        entry = _find_entry(doc, service, services.get(service))
        if entry is None:
            raise PolicyViolation(f"{path} has no images entry for service '{service}'")
        entry["newTag"] = edit.new_value

    rendered = yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)
    load_overlay(rendered, path)
    return rendered
