"""
AI-assisted resume and job description parsing
"""
import io
import json
import logging
import re
from typing import Optional

import pdfplumber
from docx import Document as DocxDocument
from openai import AsyncOpenAI, OpenAIError
from pydantic import ValidationError

from portal_backend.models import JobSkills, ParsedResume

logger = logging.getLogger(__name__)

MAX_RESUME_CHARS = 6000
MAX_DESCRIPTION_CHARS = 5000

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

RESUME_SYSTEM_PROMPT = """You are an expert Resume Parser.
Analyze the resume text and extract the following information into a strict JSON format.
Return ONLY the JSON. Do not include markdown formatting like ```json.

Required JSON Structure:
{
  "name": "Full Name",
  "email": "email address",
  "phone": "phone number",
  "location": "City, Country (e.g. London, UK) or full address if available",
  "country_emoji": "The flag emoji for the candidate's country location. Return null if location is unclear.",
  "skills": ["skill1", "skill2"],
  "experience": [
    { "title": "Job Title", "company": "Company Name", "duration": "Dates" }
  ],
  "education": [
    { "degree": "Degree Name", "institution": "School Name", "year": "Year" }
  ],
  "summary": "Brief professional summary."
}
If a field is not found, use null or empty array."""

SKILLS_SYSTEM_PROMPT = """Analyze the Job Description and extract the top 10 most important technical and soft skills required.
Also estimate the seniority level (Junior, Mid, Senior, Lead).

Return ONLY a JSON object with this structure:
{
  "skills": ["skill1", "skill2"],
  "seniority": "Senior"
}"""


class ResumeParsingError(Exception):
    pass


def extract_text(content: bytes, mime_type: Optional[str], filename: Optional[str] = None) -> str:
    """Extract text from resume bytes (PDF, DOCX, or plain text)"""
    mime_type = (mime_type or "").lower()
    filename = (filename or "").lower()
    extracted_text = ""

    try:
        if mime_type == "application/pdf" or filename.endswith(".pdf"):
            with pdfplumber.open(io.BytesIO(content)) as pdf:
                for page in pdf.pages:
                    page_text = page.extract_text()
                    if page_text:
                        extracted_text += page_text + "\n"

        elif mime_type == DOCX_MIME or filename.endswith(".docx"):
            doc = DocxDocument(io.BytesIO(content))
            for paragraph in doc.paragraphs:
                extracted_text += paragraph.text + "\n"
            # Tables often hold contact blocks
            for table in doc.tables:
                for row in table.rows:
                    for cell in row.cells:
                        extracted_text += cell.text + " "
                    extracted_text += "\n"

        else:
            extracted_text = content.decode("utf-8", errors="ignore")
    except Exception as e:
        logger.error(f"Text extraction failed for {filename or mime_type}: {e}")
        raise ResumeParsingError("Could not read resume file")

    logger.debug(f"Extracted {len(extracted_text)} chars from {filename or mime_type}")

    extracted_text = re.sub(r'\n{3,}', '\n\n', extracted_text)
    extracted_text = re.sub(r' {2,}', ' ', extracted_text)
    return extracted_text.strip()


async def call_openai_directly(system_prompt: str, user_prompt: str, api_key: str, model: str = "gpt-4o-mini") -> str:
    """Call OpenAI API directly using the official SDK"""
    client = AsyncOpenAI(api_key=api_key)
    response = await client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt}
        ],
        temperature=0.2,
        max_tokens=2000
    )
    return response.choices[0].message.content or ""


def extract_json(text: str) -> dict:
    """Pull the JSON object out of a model reply, tolerating markdown fences"""
    cleaned = text.replace("```json", "").replace("```", "").strip()
    match = re.search(r'\{.*\}', cleaned, re.DOTALL)
    if not match:
        raise ValueError("No JSON found in response")
    data = json.loads(match.group())
    if not isinstance(data, dict):
        raise ValueError("Response JSON is not an object")
    return data


def _normalize_resume(data: dict) -> dict:
    for key in ["skills", "experience", "education"]:
        if data.get(key) is None:
            data[key] = []
    # Null sub-fields become empty strings
    for key in ["experience", "education"]:
        data[key] = [
            {k: (v if v is not None else "") for k, v in entry.items()}
            for entry in data[key] if isinstance(entry, dict)
        ]
    data["skills"] = [s for s in data["skills"] if isinstance(s, str)]
    return data


async def parse_resume_with_ai(resume_text: str, api_key: str, model: str = "gpt-4o-mini") -> ParsedResume:
    if not resume_text.strip():
        raise ResumeParsingError("No text could be extracted from the resume")

    prompt = f"""RESUME TEXT:
---
{resume_text[:MAX_RESUME_CHARS]}
---"""

    try:
        response = await call_openai_directly(RESUME_SYSTEM_PROMPT, prompt, api_key, model)
    except OpenAIError as e:
        logger.error(f"AI resume parsing call failed: {e}")
        raise ResumeParsingError("AI parsing failed")

    try:
        data = extract_json(response)
    except ValueError:
        logger.error(f"AI returned invalid JSON: {response[:500]}")
        raise ResumeParsingError("AI parsing failed to return valid JSON")

    try:
        return ParsedResume(**_normalize_resume(data))
    except ValidationError as e:
        logger.error(f"AI resume output failed validation: {e}")
        raise ResumeParsingError("AI returned data that did not match the expected schema")


async def extract_job_skills(description: str, api_key: str, model: str = "gpt-4o-mini") -> dict:
    """Top skills and seniority for a job description; empty result when the AI output is unusable"""
    fallback = {"skills": [], "seniority": "Unknown"}
    prompt = f"Job Description:\n{description[:MAX_DESCRIPTION_CHARS]}"

    response = await call_openai_directly(SKILLS_SYSTEM_PROMPT, prompt, api_key, model)

    try:
        parsed = JobSkills(**extract_json(response))
    except (ValueError, TypeError):
        logger.warning(f"Unusable skills response: {response[:300]}")
        return fallback

    return {
        "skills": [skill.lower() for skill in parsed.skills],
        "seniority": parsed.seniority
    }
