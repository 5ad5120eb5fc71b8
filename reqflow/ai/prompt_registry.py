"""
Reqflow
Prompt Registry.

Each provider operation renders a named template into chat messages.
Templates are keyed by ``(name, version)``; a provider may register its own
variant under its id as the version, otherwise ``v1`` is used. YAML files in
``AI_PROMPTS_DIR`` are layered over the built-ins.

Usage:
    from reqflow.ai.prompt_registry import PromptRegistry
    registry = PromptRegistry()
    messages = registry.render("requirement_analysis", provider="gemini",
                               requirement_text="Users can register ...")
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "v1"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def fill(text: str, variables: dict) -> str:
    """Substitute ``{{name}}`` placeholders; unknown names are left as written."""
    return _PLACEHOLDER.sub(
        lambda m: str(variables[m.group(1)]) if m.group(1) in variables else m.group(0),
        text,
    )


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    version: str
    system: str
    user: str
    description: str = ""
    metadata: dict = field(default_factory=dict)

    def render(self, **variables) -> list[dict]:
        """Chat messages for this template, skipping a role whose text is blank."""
        pairs = (("system", fill(self.system, variables)), ("user", fill(self.user, variables)))
        return [{"role": role, "content": text} for role, text in pairs if text.strip()]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "system_preview": self.system[:200],
            "user_preview": self.user[:200],
        }


def load_yaml_templates(directory: Path) -> list[PromptTemplate]:
    """Read every ``*.yaml`` mapping in *directory* as a template."""
    templates = []
    for path in sorted(directory.glob("*.yaml")):
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            logger.warning("Ignoring prompt file %s: expected a mapping", path.name)
            continue
        templates.append(PromptTemplate(
            name=data.get("name", path.stem),
            version=str(data.get("version", DEFAULT_VERSION)),
            system=data.get("system", ""),
            user=data.get("user", ""),
            description=data.get("description", ""),
            metadata=data.get("metadata") or {},
        ))
    return templates


class PromptRegistry:
    """Built-in templates with optional YAML overrides on top."""

    def __init__(self, prompts_dir: str | None = None):
        self._prompts_dir = prompts_dir
        self._by_name: dict[str, dict[str, PromptTemplate]] = {}
        for tpl in _DEFAULT_TEMPLATES:
            self.add(tpl)
        if prompts_dir:
            directory = Path(prompts_dir)
            if directory.is_dir():
                for tpl in load_yaml_templates(directory):
                    self.add(tpl)
                    logger.info("Prompt override %s/%s loaded", tpl.name, tpl.version)
            else:
                logger.info("No prompts directory at %s, built-in templates only", directory)

    def add(self, template: PromptTemplate):
        self._by_name.setdefault(template.name, {})[template.version] = template

    def get(self, name: str, version: str = DEFAULT_VERSION) -> PromptTemplate | None:
        return self._by_name.get(name, {}).get(version)

    def resolve(self, name: str, provider: str | None = None) -> PromptTemplate:
        """The provider's own variant of ``name`` if registered, else the default.

        Raises:
            KeyError: If neither exists.
        """
        tpl = (provider and self.get(name, provider)) or self.get(name, DEFAULT_VERSION)
        if tpl is None:
            raise KeyError(f"Prompt template not found: {name}")
        return tpl

    def render(self, name: str, provider: str | None = None, **variables) -> list[dict]:
        return self.resolve(name, provider).render(**variables)

    def list_templates(self) -> list[dict]:
        return [
            tpl.to_dict()
            for versions in self._by_name.values()
            for tpl in versions.values()
        ]

    def get_versions(self, name: str) -> list[str]:
        return list(self._by_name.get(name, {}))


# ── Built-in Default Templates ────────────────────────────────────────────────

_JSON_ONLY = "Respond with a single JSON object and nothing else."

_DEFAULT_TEMPLATES = [
    PromptTemplate(
        name="requirement_analysis",
        version=DEFAULT_VERSION,
        description="Structure a free-text business requirement",
        system=(
            "You are a senior business analyst. Read the requirement and extract its "
            "structure. " + _JSON_ONLY + "\n\n"
            "Schema:\n"
            "{\n"
            '  "core_functions": ["..."],\n'
            '  "roles": ["..."],\n'
            '  "business_processes": [{"name": "", "description": "", "steps": [""], "actors": [""]}],\n'
            '  "data_entities": [{"name": "", "description": "",\n'
            '      "attributes": [{"name": "", "type": "", "required": true, "description": ""}],\n'
            '      "relations": [{"target": "", "kind": "1-1|1-N|N-N", "description": ""}]}],\n'
            '  "missing_info": ["..."],\n'
            '  "completion_score": 0.0\n'
            "}\n"
            "completion_score is between 0 and 1 and reflects how complete the requirement is."
        ),
        user="Requirement:\n{{requirement_text}}",
    ),
    PromptTemplate(
        name="requirement_analysis",
        version="gemini",
        description="Structure a free-text business requirement (rich schema)",
        system=(
            "You are a senior business analyst. Read the requirement and extract its "
            "structure. " + _JSON_ONLY + "\n\n"
            "Schema:\n"
            "{\n"
            '  "core_functions": [{"name": "", "description": ""}],\n'
            '  "user_roles": [{"name": "", "description": ""}],\n'
            '  "business_processes": [{"name": "", "description": "",\n'
            '      "steps": [{"step_name": "", "actor": ""}]}],\n'
            '  "data_entities": [{"name": "", "description": "",\n'
            '      "attributes": [{"name": "", "type": "", "required": true, "description": ""}],\n'
            '      "relations": [{"target": "", "kind": "1-1|1-N|N-N", "description": ""}]}],\n'
            '  "missing_info": [{"description": ""}],\n'
            '  "completion_score": 0.0\n'
            "}"
        ),
        user="Requirement:\n{{requirement_text}}",
    ),
    PromptTemplate(
        name="questions",
        version=DEFAULT_VERSION,
        description="Supplementary questions that close gaps in an analysis",
        system=(
            "You help complete software requirements by asking targeted questions. "
            + _JSON_ONLY + "\n\n"
            "Schema:\n"
            '{"questions": [{"category": "business_rule|exception_handling|data_structure|'
            'external_interface|performance_requirement|security_requirement",\n'
            '  "content": "", "options": [""], "priority": 1, "target_info": ""}]}\n'
            "priority ranges from 1 (highest) to 5."
        ),
        user="Requirement analysis:\n{{analysis_json}}",
    ),
    PromptTemplate(
        name="puml_diagram",
        version=DEFAULT_VERSION,
        description="PlantUML diagram of the requested type",
        system=(
            "You are a software architect who writes PlantUML. " + _JSON_ONLY + "\n\n"
            'Schema: {"title": "", "content": "@startuml ... @enduml", "description": ""}'
        ),
        user=(
            "Diagram type: {{diagram_type}}\n\n"
            "Requirement analysis:\n{{analysis_json}}"
        ),
    ),
    PromptTemplate(
        name="document",
        version=DEFAULT_VERSION,
        description="Requirements document in markdown",
        system=(
            "You are a technical writer. Produce a requirements document in markdown. "
            + _JSON_ONLY + "\n\n"
            'Schema: {"title": "", "content": "markdown", "document_type": "requirements", '
            '"version": "1.0"}'
        ),
        user="Requirement analysis:\n{{analysis_json}}",
    ),
    PromptTemplate(
        name="stage_document",
        version=DEFAULT_VERSION,
        description="Development document for one lifecycle stage",
        system=(
            "You are a technical writer on a software delivery team. Produce the "
            "requested development document in markdown. " + _JSON_ONLY + "\n\n"
            'Schema: {"title": "", "content": "markdown", "document_type": "{{document_type}}", '
            '"version": "1.0"}'
        ),
        user=(
            "Document type: {{document_type}}\n\n"
            "Requirement analysis:\n{{analysis_json}}"
        ),
    ),
    PromptTemplate(
        name="project_chat",
        version=DEFAULT_VERSION,
        description="Conversational assistant scoped to one project",
        system=(
            "You are the project's requirements assistant. Answer the user's message "
            "using the project context. " + _JSON_ONLY + "\n\n"
            'Schema: {"message": "", "should_update_analysis": false, '
            '"related_questions": [""], "suggestions": [""], "analysis_updates": {}}'
        ),
        user="Project context:\n{{context}}\n\nUser message:\n{{message}}",
    ),
]
