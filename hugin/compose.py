"""Author a research task (``input`` + ``output_schema``) with an ordered model fallback.

Candidates are tried strictly one after another; the first model that
returns valid JSON wins and no later model is called.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .errors import ComposeExhausted, NoModelCandidates, NotConfigured
from .llm import ChatCompletionError, extract_message_content
from .schemas import ComposeRequest, ComposeResult

logger = logging.getLogger("uvicorn.error")

COMPOSE_SYSTEM = (
    "You are a careful prompt and schema designer. Output only strict JSON with keys "
    "input and output_schema. No explanations."
)

PROCESSOR_NOTES: Dict[str, Dict[str, str]] = {
    "lite": {
        "input_limit": "~100–140 words max",
        "brief": "Factoid-level; keep schema minimal (direct answer, 2–3 key points, sources).",
    },
    "base": {
        "input_limit": "~140–170 words max",
        "brief": "Short brief; include direct answer, 3–6 key points, sources.",
    },
    "core": {
        "input_limit": "~170–200 words max",
        "brief": "Balanced synthesis; include executive summary, 4–8 key findings, sources; add next steps if useful.",
    },
    "pro": {
        "input_limit": "~200–230 words max",
        "brief": "Thorough; include exec summary, 6–12 findings, next steps, uncertainties if any, sources.",
    },
    "ultra": {
        "input_limit": "~230–260 words max",
        "brief": "Deep dive; allow thematic sections when relevant, rich findings, actions, uncertainties, sources.",
    },
}


class ChatClient(Protocol):
    @property
    def enabled(self) -> bool: ...

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        response_format: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]: ...


def build_meta_prompt(request: ComposeRequest, default_processor: str = "pro") -> str:
    bc = (request.business_context or "").strip()
    cb = (request.company_block or "").strip()
    processor = request.processor or default_processor
    notes = PROCESSOR_NOTES.get(processor, PROCESSOR_NOTES["pro"])
    # Everything sent to the task API is English; translation happens downstream.
    return "\n".join(
        [
            'You design the optimal "input" and "output_schema" for a web-searching research model.',
            "All content sent to the research model must be English. If the provided fields are not in English, "
            "translate/normalize them to concise English first.",
            "Do NOT add any translation requirements to the output_schema; a separate system will translate the "
            "final English result into the target language afterward.",
            "Use only the minimum necessary details from the provided fields; omit irrelevant information that "
            "does not help answer the prompt.",
            "",
            f"Processor context: {processor}. {notes['brief']}",
            f"- Match depth/length to processor. Input length budget: {notes['input_limit']}.",
            "",
            "Return ONLY valid JSON with keys:",
            "{",
            '  "input": "<string to send to the research model>",',
            '  "output_schema": "<string describing how the research model must structure its English answer>"',
            "}",
            "",
            "Data:",
            f"- Prompt: {request.prompt}",
            f"- Business context (about me): {bc or '(none provided)'}",
            f"- Company block (about the target company): {cb or '(none provided)'}",
            "",
            'Rules for "input":',
            "- English only. Briefly normalize any non-English content into English while preserving meaning.",
            "- Compose clearly labeled blocks in this order:",
            "  1) Prompt: <restated, precise, one-sentence request>",
            "  2) Business context: <who the user/company is, why this matters, constraints/preferences>",
            "  3) Company: <use company block verbatim except minor normalization (URL formatting, whitespace)>",
            "  4) Role variants: <comma-separated synonyms/variants of the target role/title> "
            "(include only when the ask targets a person with a specific role/title)",
            "- Include only details necessary to fulfill the prompt. Do not copy everything from the inputs.",
            "- Retrieval guidance: prioritize official pages (company site/team/press), authoritative profiles "
            "(LinkedIn), recent news/press, and filings/registries. Avoid speculation. When searching for a person "
            "by role/title, include role/title variants and closely-related seniority variants to maximize recall.",
            "- Keep concise and decision-oriented; respect the processor input budget above.",
            "",
            'Instructions for "Role variants" (only when person-by-role is requested):',
            "- Generate 6-12 compact variants that a company may use for the same role/title.",
            "- Include: common abbreviations, synonyms, and seniority alternatives "
            "(e.g., Head of X, VP of X, Director of X, Lead X).",
            "- Include locale/orthography variants when relevant (e.g., organisation/organization).",
            "- Keep them short and comma-separated; no duplicates or speculation about names; titles only.",
            "- Example: Chief Financial Officer → CFO, Chief Financial Officer, VP Finance, Head of Finance, "
            "Finance Director, Director of Finance",
            "",
            'Rules for "output_schema" (flexible by question complexity & processor):',
            "- Always require the model to answer in English and use bracketed citation IDs [n] tied to a Sources list.",
            "- Pick the schema that best fits the prompt; keep sections only when useful.",
            f"- If processor is {processor}, prioritize: {notes['brief']}",
            "",
            "Complexity: simple (factoid / narrow ask)",
            "- Sections:",
            "  - Direct answer (2–4 sentences) with [n] where claims are made",
            "  - Key points (3–6 bullets) with [n]",
            "  - Sources: numbered list (1..n) with URL, title, accessed_at (YYYY-MM-DD)",
            "",
            "Complexity: moderate (single-topic research / brief synthesis)",
            "- Sections:",
            "  - Executive summary (2–4 sentences) with [n]",
            "  - Key findings (4–10 bullets) with [n]",
            "  - Actionable next steps (2–6 bullets) when applicable",
            "  - Uncertainties/gaps (bullets) if evidence is limited",
            "  - Sources (1..n) with URL, title, accessed_at",
            "",
            "Complexity: deep (multi-faceted / comparative / strategic)",
            "- Sections (include only those that fit the ask):",
            "  - Overview and context (2–4 sentences) with [n]",
            "  - Thematic analysis (subsections by theme; each with [n])",
            "  - If people-focused: a People block listing name, title, organization, region (optional), "
            "LinkedIn URL, reason for relevance, each with source_ids",
            "  - Metrics/data (units, ranges, recency; state assumptions)",
            "  - Risks/uncertainties",
            "  - Recommended actions/plan",
            "  - Sources (1..n) with URL, title, accessed_at",
            "",
            "General requirements (apply to all complexities):",
            "- Neutral, concise, business-friendly tone. Markdown allowed, no HTML.",
            "- Do not invent facts or emails; if unknown, state it and lower confidence.",
            "- For comparisons/lists: use consistent criteria; concise table-like bullets are acceptable.",
            "- Always reference sources via [n] in text and provide matching numbered entries in Sources.",
            "",
            "Validation:",
            '- Return strictly valid JSON containing only "input" and "output_schema".',
        ]
    )


def parse_json_content(content: str) -> Any:
    """Strict parse, then retry on the outermost ``{...}`` span."""
    try:
        return json.loads(content)
    except ValueError:
        pass
    start = content.find("{")
    end = content.rfind("}")
    if start >= 0 and end > start:
        try:
            return json.loads(content[start : end + 1])
        except ValueError:
            pass
    raise ChatCompletionError("Model did not return valid JSON")


def _validated_result(parsed: Any, model: str) -> ComposeResult:
    if not isinstance(parsed, dict):
        raise ChatCompletionError("Invalid JSON shape: expected an object")
    task_input = parsed.get("input")
    output_schema = parsed.get("output_schema")
    if not isinstance(output_schema, str) or not output_schema.strip():
        output_schema = parsed.get("outputSchema")
    if not isinstance(task_input, str) or not task_input.strip():
        raise ChatCompletionError("Invalid JSON shape: expected string input and output_schema")
    if not isinstance(output_schema, str) or not output_schema.strip():
        raise ChatCompletionError("Invalid JSON shape: expected string input and output_schema")
    return ComposeResult(input=task_input, output_schema=output_schema, model=model)


class MetaPromptComposer:
    def __init__(
        self,
        chat_client: ChatClient,
        models: Sequence[str],
        temperature: float = 0.2,
        timeout_s: Optional[float] = None,
        default_processor: str = "pro",
    ):
        self.chat_client = chat_client
        self.models = list(models)
        self.temperature = temperature
        self.timeout_s = timeout_s
        self.default_processor = default_processor

    async def _attempt(self, model: str, meta_prompt: str) -> ComposeResult:
        data = await self.chat_client.chat_completion(
            model=model,
            messages=[
                {"role": "system", "content": COMPOSE_SYSTEM},
                {"role": "user", "content": meta_prompt},
            ],
            temperature=self.temperature,
            response_format={"type": "json_object"},
            timeout=self.timeout_s,
        )
        content = extract_message_content(data)
        if not content:
            raise ChatCompletionError("No content returned from model")
        return _validated_result(parse_json_content(content), model)

    async def compose(self, request: ComposeRequest) -> ComposeResult:
        if not request.prompt.strip():
            raise ValueError("prompt is required")
        if not self.chat_client.enabled:
            raise NotConfigured("OpenRouter API key not configured")
        if not self.models:
            raise NoModelCandidates()
        meta_prompt = build_meta_prompt(request, self.default_processor)
        logger.debug("Compose meta-prompt:\n%s", meta_prompt)
        last_error = ""
        for model in self.models:
            logger.info("Compose trying model %s", model)
            try:
                result = await self._attempt(model, meta_prompt)
            except ChatCompletionError as exc:
                last_error = str(exc)
                logger.warning("Compose model failed: %s: %s", model, last_error)
                continue
            logger.info("Compose model succeeded: %s", model)
            return result
        raise ComposeExhausted(last_error, attempts=len(self.models))
