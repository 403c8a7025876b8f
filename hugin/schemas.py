from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


ProcessorTier = Literal["lite", "base", "core", "pro", "ultra"]
PollStatus = Literal["queued", "running", "completed", "stuck", "error"]
PROCESSOR_TIERS = ("lite", "base", "core", "pro", "ultra")
TERMINAL_STATUSES = {"completed", "error"}


class ComposeRequest(BaseModel):
    prompt: str = ""
    business_context: Optional[str] = Field(default=None, alias="businessContext")
    company_block: Optional[str] = Field(default=None, alias="companyBlock")
    processor: Optional[ProcessorTier] = None

    model_config = {"populate_by_name": True}


class ComposeResult(BaseModel):
    input: str
    output_schema: str
    model: str

    model_config = {"frozen": True, "protected_namespaces": ()}

    def to_response(self) -> Dict[str, str]:
        return {"input": self.input, "outputSchema": self.output_schema, "model": self.model}


class CreateRunRequest(BaseModel):
    company_name: str = Field(default="", alias="companyName")
    website: Optional[str] = None
    org_number: Optional[str] = Field(default=None, alias="orgNumber")
    processor: Optional[ProcessorTier] = None
    prompt: Optional[str] = None
    custom_input: Optional[str] = Field(default=None, alias="customInput")
    # Replaces the generated Company/Org number/Website lines when set.
    company_input: Optional[str] = Field(default=None, alias="companyInput")
    # Full input override; prompt, custom_input and company_input are ignored.
    input: Optional[str] = None
    output_schema: Optional[str] = Field(default=None, alias="outputSchema")
    metadata: Optional[Dict[str, Any]] = None

    model_config = {"populate_by_name": True}


class Run(BaseModel):
    id: str
    processor: ProcessorTier
    created_at: datetime

    model_config = {"frozen": True}


class Citation(BaseModel):
    url: str
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {"url": self.url}
        if self.title:
            data["title"] = self.title
        return data


class NormalizedResult(BaseModel):
    text: str
    citations: List[Citation] = Field(default_factory=list)


class Diagnostics(BaseModel):
    elapsed_seconds: int
    estimate_seconds: int


class PollOutcome(BaseModel):
    run_id: str
    status: PollStatus
    result: Optional[NormalizedResult] = None
    # Upstream ``output`` object, passed through for callers that render it themselves.
    raw_output: Optional[Any] = None
    retry_after_seconds: Optional[int] = None
    diagnostics: Optional[Diagnostics] = None
    error: Optional[str] = None
    generation: Optional[int] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"runId": self.run_id, "status": self.status}
        if self.generation is not None:
            body["generation"] = self.generation
        if self.status == "completed" and self.result is not None:
            output: Dict[str, Any] = {"text": self.result.text}
            if isinstance(self.raw_output, dict) and isinstance(self.raw_output.get("basis"), list):
                output["basis"] = self.raw_output["basis"]
            body["result"] = {"output": output}
            body["normalized"] = {
                "text": self.result.text,
                "citations": [c.to_dict() for c in self.result.citations],
            }
            return body
        if self.retry_after_seconds is not None:
            body["retryAfterSeconds"] = self.retry_after_seconds
        if self.diagnostics is not None:
            body["diagnostics"] = {
                "elapsedSeconds": self.diagnostics.elapsed_seconds,
                "estimateSeconds": self.diagnostics.estimate_seconds,
            }
        if self.error:
            body["error"] = self.error
        return body
