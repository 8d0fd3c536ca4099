import json
import logging
import uuid

from pydantic import ValidationError

from app.core.config import get_settings
from app.core.deps import get_llm_client
from app.models.generation import TemplateGenerationRequest
from app.models.template import decode_template
from app.services.errors import GenerationError

logger = logging.getLogger(__name__)

GENERATION_SYSTEM = (
    "Du bist ein Experte für Mathematikdidaktik an deutschen Schulen. "
    "Du erstellst Aufgabenvorlagen für eine Lern-App. Die Aufgaben werden nur "
    "am Bildschirm gelöst: keine Zeichnungen, keine Bilder, keine Bastelaufgaben, "
    "keine Fragen nach Gegenständen des Kindes. Antworte ausschließlich mit JSON."
)

GENERATION_USER_TEMPLATE = """Erstelle eine {question_type} Aufgabe.

Fach: {subject}
Klasse: {grade}
Quartal: {quarter}
Bereich: {domain}
Unterkategorie: {subcategory}
Anforderungsbereich: {difficulty}
Stichworte: {tags}

JSON-Format:
{{
  "student_prompt": "Aufgabentext für das Kind",
  "solution": "richtige Antwort",
  "distractors": ["falsche Antwort 1", "falsche Antwort 2", "falsche Antwort 3"],
  "items": ["nur bei sort: Elemente in richtiger Reihenfolge"],
  "pairs": [["nur bei match: links", "rechts"]],
  "explanation": "kurze Erklärung"
}}"""


def _clean_json(content: str) -> str:
    """Strip markdown fences."""
    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()


class TemplateGenerationService:
    """Turns one generation request into one candidate template via the LLM client."""

    def __init__(self, client=None, model: str = "gpt-4o-mini", temperature: float = 0.7, max_tokens: int = 1024):
        self.client = client if client is not None else get_llm_client(get_settings())
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def generate_template(self, request: TemplateGenerationRequest):
        user_msg = GENERATION_USER_TEMPLATE.format(
            question_type=request.question_type,
            subject=request.subject,
            grade=request.grade,
            quarter=request.quarter,
            domain=request.domain,
            subcategory=request.subcategory,
            difficulty=request.difficulty,
            tags=", ".join(request.tags) or "-",
        )
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": GENERATION_SYSTEM},
                    {"role": "user", "content": user_msg},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            payload = json.loads(_clean_json(response.choices[0].message.content or ""))
        except json.JSONDecodeError as exc:
            raise GenerationError(f"LLM returned invalid JSON: {exc}") from exc
        except Exception as exc:
            raise GenerationError(f"LLM call failed: {exc}") from exc

        if not isinstance(payload, dict) or not payload.get("student_prompt"):
            raise GenerationError("LLM response has no student_prompt")

        row = {
            "id": uuid.uuid4().hex,
            "grade": request.grade,
            "grade_app": request.grade,
            "quarter_app": request.quarter,
            "domain": request.domain,
            "subcategory": request.subcategory,
            "difficulty": request.difficulty,
            "question_type": request.question_type,
            "student_prompt": payload["student_prompt"],
            "solution": payload.get("solution"),
            "distractors": [str(d) for d in payload.get("distractors") or []],
            "items": payload.get("items") or [],
            "pairs": payload.get("pairs") or [],
            "quality_score": 0.5,
            "status": "ACTIVE",
        }
        try:
            return decode_template(row)
        except ValidationError as exc:
            raise GenerationError(f"generated template does not validate: {exc.errors()[0].get('msg')}") from exc
