"""
Renders configuration templates.

A template is plain text with {{NAME}} placeholders. It may also have feature-gated lines: a feature is
identified by a marker substring, and every line containing the marker of a feature that is not enabled is
dropped from the output. This is how we leave out e.g. the TimescaleDB settings block entirely when the
extension isn't installed, rather than emitting it with empty values.

Rendering is done in two stages:
  1. Substitution. Every {{NAME}} must have a value. If any don't, MissingPlaceholderError is raised, since
     the placeholders of a template are a known, closed set and a missing one is a bug in the caller.
  2. Feature gating. Markers are matched against the template's lines, not the substituted ones, so a
     substituted value can never accidentally gate a line.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import AbstractSet, Iterable, Mapping, Union

from algolib.errors import MissingPlaceholderError

PLACEHOLDER_PATTERN = re.compile(r"\{\{([A-Za-z_][A-Za-z0-9_]*)\}\}")
# A line and its "\n" (if any). Unlike str.splitlines(), form feeds and the like stay inside the line.
LINE_PATTERN = re.compile(r"[^\n]*\n|[^\n]+\Z")


@dataclass(frozen=True)
class ConfigTemplate:
    text: str
    # Markers of the features this template gates. A feature's marker doubles as its name.
    features: frozenset[str] = field(default_factory=frozenset)


def load_template(path: Path, features: Iterable[str] = ()) -> ConfigTemplate:
    with open(path, encoding="utf-8") as f:
        return ConfigTemplate(f.read(), frozenset(features))


def placeholders(template: Union[ConfigTemplate, str]) -> set[str]:
    text = template.text if isinstance(template, ConfigTemplate) else template
    return set(PLACEHOLDER_PATTERN.findall(text))


def render(
    template: Union[ConfigTemplate, str],
    substitutions: Mapping[str, object],
    enabled_features: AbstractSet[str] = frozenset(),
) -> str:
    if isinstance(template, str):
        template = ConfigTemplate(template)

    missing = placeholders(template) - substitutions.keys()
    if len(missing) > 0:
        raise MissingPlaceholderError(missing)

    def substitute(match: re.Match[str]) -> str:
        return str(substitutions[match.group(1)])

    disabled_markers = [
        marker for marker in template.features if marker not in enabled_features
    ]
    rendered_lines: list[str] = []
    # Each line keeps its ending so that the output has exactly the line endings (and trailing newline, or lack
    # of one) of the template.
    for line in LINE_PATTERN.findall(template.text):
        if any(marker in line for marker in disabled_markers):
            continue
        rendered_lines.append(PLACEHOLDER_PATTERN.sub(substitute, line))
    return "".join(rendered_lines)
