"""
Reqflow
Tests: Prompt Registry.

Covers:
    - built-in templates for every provider operation
    - provider variant resolution with v1 fallback
    - {{variable}} rendering
    - YAML overrides from a prompts directory
"""

import pytest

from reqflow.ai.prompt_registry import PromptRegistry, PromptTemplate


class TestBuiltInTemplates:

    def test_every_operation_has_a_template(self):
        registry = PromptRegistry()
        for name in ("requirement_analysis", "questions", "puml_diagram",
                     "document", "stage_document", "project_chat"):
            assert registry.get(name) is not None

    def test_render_substitutes_variables(self):
        messages = PromptRegistry().render("puml_diagram", diagram_type="class", analysis_json="{}")
        assert [m["role"] for m in messages] == ["system", "user"]
        assert messages[1]["content"].startswith("Diagram type: class")

    def test_unknown_variable_left_in_place(self):
        tpl = PromptTemplate(name="t", version="v1", system="", user="Hi {{ name }} {{other}}")
        assert tpl.render(name="Ada") == [{"role": "user", "content": "Hi Ada {{other}}"}]

    def test_provider_variant(self):
        registry = PromptRegistry()
        assert registry.resolve("requirement_analysis", "gemini").version == "gemini"
        assert registry.resolve("requirement_analysis", "openai").version == "v1"
        assert registry.resolve("questions", "gemini").version == "v1"

    def test_unknown_template(self):
        with pytest.raises(KeyError):
            PromptRegistry().resolve("nope")

    def test_versions(self):
        assert sorted(PromptRegistry().get_versions("requirement_analysis")) == ["gemini", "v1"]


class TestYamlOverrides:

    def test_yaml_replaces_default(self, tmp_path):
        (tmp_path / "questions.yaml").write_text(
            "name: questions\n"
            "version: v1\n"
            "system: Ask short questions.\n"
            "user: 'Analysis: {{analysis_json}}'\n",
            encoding="utf-8",
        )
        registry = PromptRegistry(str(tmp_path))

        messages = registry.render("questions", analysis_json='{"a": 1}')

        assert messages[0]["content"] == "Ask short questions."
        assert messages[1]["content"] == 'Analysis: {"a": 1}'

    def test_yaml_adds_provider_variant(self, tmp_path):
        (tmp_path / "claude_chat.yaml").write_text(
            "name: project_chat\n"
            "version: claude\n"
            "system: Be brief.\n"
            "user: '{{message}}'\n",
            encoding="utf-8",
        )
        registry = PromptRegistry(str(tmp_path))
        assert registry.resolve("project_chat", "claude").system == "Be brief."
        assert registry.resolve("project_chat", "openai").version == "v1"

    def test_missing_directory_uses_defaults(self, tmp_path):
        registry = PromptRegistry(str(tmp_path / "absent"))
        assert registry.get("document") is not None

    def test_non_mapping_file_skipped(self, tmp_path):
        (tmp_path / "broken.yaml").write_text("- just\n- a list\n", encoding="utf-8")
        registry = PromptRegistry(str(tmp_path))
        assert registry.get("broken") is None


class TestRegistration:

    def test_add_provider_variant_at_runtime(self):
        registry = PromptRegistry()
        registry.add(PromptTemplate(name="document", version="claude", system="", user="{{document_type}}"))

        assert registry.render("document", "claude", document_type="api_design") == [
            {"role": "user", "content": "api_design"},
        ]
        assert any(
            t["name"] == "document" and t["version"] == "claude"
            for t in registry.list_templates()
        )
