from caseflow.models.taxonomy import PromptTemplate, PromptTemplateType
from caseflow.prompts.pipeline_prompts import (
    CLASSIFICATION_MAX_TOKENS,
    CLASSIFICATION_SYSTEM_PROMPT,
    EXTRACTION_MAX_TOKENS,
    build_classification_prompt,
    build_extraction_prompt,
    render_template,
)

from conftest import make_pack


def test_render_template_leaves_json_braces_alone():
    rendered = render_template('Type {{kind}}: {"documentType": "<key>"}', {"kind": "letter"})
    assert rendered == 'Type letter: {"documentType": "<key>"}'


class TestClassificationPrompt:
    def test_default_prompt(self):
        pack = make_pack()
        prompt = build_classification_prompt(
            pack.document_types, "x" * 5000, mime_type="application/pdf", filename="letter.pdf", sample_chars=100
        )

        assert prompt.system_prompt == CLASSIFICATION_SYSTEM_PROMPT
        assert '- "demand_letter" (Demand Letter)' in prompt.user_prompt
        assert "Filename: letter.pdf" in prompt.user_prompt
        assert "x" * 100 in prompt.user_prompt
        assert "x" * 101 not in prompt.user_prompt
        assert prompt.max_tokens == CLASSIFICATION_MAX_TOKENS
        assert prompt.temperature == 0.1

    def test_pack_template_overrides(self):
        template = PromptTemplate(
            template_type=PromptTemplateType.CLASSIFICATION,
            system_prompt="Custom system",
            user_prompt_template="Types:\n{{document_types}}\nText: {{text_sample}}",
            model_preference="custom/model",
            temperature=0.0,
        )

        prompt = build_classification_prompt(make_pack().document_types, "hello", template=template)

        assert prompt.system_prompt == "Custom system"
        assert prompt.user_prompt.endswith("Text: hello")
        assert prompt.model == "custom/model"
        assert prompt.temperature == 0.0
        assert prompt.max_tokens == CLASSIFICATION_MAX_TOKENS


def test_extraction_prompt_describes_fields_and_chunk():
    pack = make_pack()
    prompt = build_extraction_prompt(pack.categories, "chunk body", 0, 3, "demand_letter", default_model="m")

    assert "Chunk 1 of 3" in prompt.user_prompt
    assert "- damages.demand_amount [currency]: Demand Amount" in prompt.user_prompt
    assert "Document type: demand_letter" in prompt.user_prompt
    assert "chunk body" in prompt.user_prompt
    assert prompt.model == "m"
    assert prompt.max_tokens == EXTRACTION_MAX_TOKENS
