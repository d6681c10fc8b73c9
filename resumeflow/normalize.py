from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import orjson


_ws_re = re.compile(r"\s+")
_fence_re = re.compile(r"```(?:json)?\s*(.*?)```", re.S | re.I)
_trailing_comma_re = re.compile(r",\s*([}\]])")
_email_re = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_year_re = re.compile(r"(\d{4})")
_date_range_re = re.compile(r"\s*(?:-|–|—|\bto\b|\buntil\b)\s*", re.I)
# /foo/foo/ style garbage produced by runaway generations
_repeating_segment_re = re.compile(r"/([^/]+)/\1(?:/|$)")


def normalize_ws(s: str) -> str:
    return _ws_re.sub(" ", (s or "").strip())


# --- JSON location and repair ------------------------------------------------

def locate_json(text: str) -> Optional[str]:
    """Return the first JSON object embedded in text, possibly unterminated."""
    if not text:
        return None
    fenced = _fence_re.search(text)
    if fenced and "{" in fenced.group(1):
        text = fenced.group(1)
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return text[start:]


def repair_json(s: str) -> str:
    """Best-effort fix for truncated or sloppy JSON: close strings and brackets, drop trailing commas."""
    stack: List[str] = []
    in_string = False
    escape = False
    for ch in s:
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    out = s
    if in_string:
        if escape:
            out = out[:-1]
        out += '"'
    out = out.rstrip()
    while out.endswith(","):
        out = out[:-1].rstrip()
    if out.endswith(":"):
        out += " null"
    out += "".join(reversed(stack))
    return _trailing_comma_re.sub(r"\1", out)


def parse_json_candidate(text: str) -> Tuple[Dict[str, Any], bool]:
    """Locate and parse a JSON object in model output.

    Returns (object, repaired). Raises ValueError when nothing parseable is found.
    """
    candidate = locate_json(text or "")
    if candidate is None:
        raise ValueError("Invalid JSON response from AI: no JSON object found")
    try:
        obj = orjson.loads(candidate)
        repaired = False
    except orjson.JSONDecodeError:
        try:
            obj = orjson.loads(repair_json(candidate))
        except orjson.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON response from AI: {e}") from e
        repaired = True
    if not isinstance(obj, dict):
        raise ValueError("Invalid JSON response from AI: top-level value is not an object")
    return obj, repaired


# --- Synonym remap -----------------------------------------------------------

FieldMap = Sequence[Tuple[str, Sequence[str]]]

RESUME_FIELDS: FieldMap = (
    ("full_name", ("full_name", "fullName", "fullname", "name", "candidate_name", "candidateName")),
    ("headline", ("headline", "professional_title", "professionalTitle", "title", "role")),
    ("summary", ("summary", "professional_summary", "professionalSummary", "profile", "objective", "about")),
    ("contact", ("contact", "contact_info", "contactInfo", "contact_information", "contactInformation")),
    ("experience", ("experience", "work_experience", "workExperience", "work_history", "workHistory",
                    "employment", "positions", "jobs")),
    ("education", ("education", "educations", "academic_background", "schooling")),
    ("skills", ("skills", "skill_groups", "skillGroups", "technical_skills", "technicalSkills")),
    ("certifications", ("certifications", "certificates", "licenses", "awards")),
    ("projects", ("projects", "personal_projects", "personalProjects", "portfolio")),
)

CONTACT_FIELDS: FieldMap = (
    ("email", ("email", "email_address", "emailAddress", "mail")),
    ("phone", ("phone", "phone_number", "phoneNumber", "mobile", "telephone")),
    ("location", ("location", "address", "city")),
    ("linkedin", ("linkedin", "linkedIn", "linkedin_url", "linkedinUrl")),
    ("github", ("github", "gitHub", "github_url", "githubUrl")),
    ("website", ("website", "personal_website", "personalWebsite", "homepage", "url", "portfolio")),
)

EXPERIENCE_FIELDS: FieldMap = (
    ("title", ("title", "job_title", "jobTitle", "position", "role")),
    ("company", ("company", "company_name", "companyName", "employer", "organization")),
    ("location", ("location", "city")),
    ("start_date", ("start_date", "startDate", "start", "from", "date_start")),
    ("end_date", ("end_date", "endDate", "end", "to", "date_end")),
    ("description", ("description", "summary", "details", "responsibilities")),
    ("highlights", ("highlights", "achievements", "accomplishments", "bullets")),
)

EDUCATION_FIELDS: FieldMap = (
    ("degree", ("degree", "qualification", "program", "field_of_study")),
    ("institution", ("institution", "school", "university", "college", "school_name")),
    ("location", ("location", "city")),
    ("graduation_date", ("graduation_date", "graduationDate", "graduation", "end_date", "endDate", "date", "year")),
    ("gpa", ("gpa", "GPA", "grade")),
)

SKILL_FIELDS: FieldMap = (
    ("category", ("category", "name", "group", "type")),
    ("items", ("items", "skills", "list", "values")),
)

CERTIFICATION_FIELDS: FieldMap = (
    ("name", ("name", "title", "certification")),
    ("issuer", ("issuer", "issued_by", "issuedBy", "authority", "organization")),
    ("date", ("date", "issue_date", "issueDate", "issued", "year")),
    ("url", ("url", "link")),
)

PROJECT_FIELDS: FieldMap = (
    ("title", ("title", "name", "project_name", "projectName")),
    ("description", ("description", "summary", "details")),
    ("year", ("year", "date", "dates")),
    ("technologies", ("technologies", "tech_stack", "techStack", "stack", "tools")),
    ("url", ("url", "link", "repo", "repository")),
)


def first_present(obj: Dict[str, Any], keys: Sequence[str]) -> Tuple[bool, Any]:
    for key in keys:
        if key in obj and obj[key] is not None:
            return True, obj[key]
    return False, None


def remap(obj: Any, fields: FieldMap) -> Any:
    """Canonical keys only, taking the first synonym present for each."""
    if not isinstance(obj, dict):
        return obj
    out: Dict[str, Any] = {}
    for canonical, synonyms in fields:
        found, value = first_present(obj, synonyms)
        if found:
            out[canonical] = value
    return out


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [value]
    return [value]


def _split_items(value: Any) -> List[Any]:
    if isinstance(value, str):
        return [p.strip() for p in re.split(r"[,;\n]", value) if p.strip()]
    return _as_list(value)


def _prose(value: Any) -> Any:
    if isinstance(value, list):
        parts = [normalize_ws(str(v)) for v in value if isinstance(v, (str, int, float)) and str(v).strip()]
        return " ".join(p if p.endswith((".", "!", "?")) else p + "." for p in parts)
    return value


def _skills_to_groups(skills: Any) -> List[Any]:
    if isinstance(skills, dict):
        return [{"category": str(k), "items": _split_items(v)} for k, v in skills.items()]
    if isinstance(skills, str):
        return [{"category": "Skills", "items": _split_items(skills)}]
    if isinstance(skills, list):
        if skills and all(isinstance(s, str) for s in skills):
            return [{"category": "Skills", "items": list(skills)}]
        groups = []
        for s in skills:
            if isinstance(s, dict):
                g = remap(s, SKILL_FIELDS)
                if "items" in g:
                    g["items"] = _split_items(g["items"])
                groups.append(g)
        return groups
    return []


def _alias_dates(entry: Dict[str, Any], raw: Dict[str, Any]) -> None:
    if entry.get("start_date") or entry.get("end_date"):
        return
    found, value = first_present(raw, ("dates", "date_range", "dateRange", "period", "duration"))
    if found and isinstance(value, str) and value.strip():
        parts = _date_range_re.split(value.strip(), maxsplit=1)
        entry["start_date"] = parts[0].strip()
        if len(parts) > 1 and parts[1].strip():
            entry["end_date"] = parts[1].strip()


def structural_transform(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map synonyms onto canonical fields and fix known shape quirks."""
    data = remap(raw, RESUME_FIELDS)

    contact = data.get("contact")
    if not isinstance(contact, dict):
        contact = {}
    contact = remap(contact, CONTACT_FIELDS)
    # Some outputs put contact fields at the top level
    for canonical, synonyms in CONTACT_FIELDS:
        if canonical not in contact:
            found, value = first_present(raw, synonyms if canonical != "website" else ("website",))
            if found and isinstance(value, str):
                contact[canonical] = value
    data["contact"] = contact

    experience = []
    for item in _as_list(data.get("experience")):
        if not isinstance(item, dict):
            continue
        entry = remap(item, EXPERIENCE_FIELDS)
        _alias_dates(entry, item)
        if "description" in entry:
            entry["description"] = _prose(entry["description"])
        if isinstance(entry.get("highlights"), str):
            entry["highlights"] = [entry["highlights"]]
        experience.append(entry)
    data["experience"] = experience

    education = []
    for item in _as_list(data.get("education")):
        if isinstance(item, dict):
            education.append(remap(item, EDUCATION_FIELDS))
    data["education"] = education

    data["skills"] = _skills_to_groups(data.get("skills"))

    data["certifications"] = [
        remap(c, CERTIFICATION_FIELDS) if isinstance(c, dict) else {"name": c}
        for c in _as_list(data.get("certifications"))
        if isinstance(c, (dict, str))
    ]

    projects = []
    for item in _as_list(data.get("projects")):
        if not isinstance(item, dict):
            continue
        entry = remap(item, PROJECT_FIELDS)
        if "description" in entry:
            entry["description"] = _prose(entry["description"])
        if "technologies" in entry:
            entry["technologies"] = _split_items(entry["technologies"])
        projects.append(entry)
    data["projects"] = projects

    if "summary" in data:
        data["summary"] = _prose(data["summary"])
    return data


# --- Lenient cleanup ---------------------------------------------------------

def truncate(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return value[: max_length - 3] + "..."


def normalize_string(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if not isinstance(value, str):
        return str(value)
    return value.strip() or default


def sanitize_email(value: str) -> str:
    if not value:
        return ""
    trimmed = value.strip().lower()
    if not _email_re.match(trimmed):
        return ""
    return re.sub(r"[<>'\"]", "", trimmed)


def normalize_url(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        return ""
    trimmed = value.strip()
    lower = trimmed.lower()
    if lower.startswith(("http://", "https://", "mailto:")):
        return trimmed
    if lower.startswith(("javascript:", "data:", "vbscript:")):
        return ""
    return "https://" + trimmed


def validate_url(url: Any) -> str:
    """Normalized URL, or "" for hallucinated garbage."""
    if not url or not isinstance(url, str):
        return ""
    trimmed = url.strip()
    if not trimmed or len(trimmed) > 500:
        return ""
    if _repeating_segment_re.search(trimmed):
        return ""
    if len([s for s in trimmed.split("/") if s]) > 12:
        return ""
    normalized = normalize_url(trimmed)
    if not normalized:
        return ""
    try:
        parts = urlsplit(normalized)
    except ValueError:
        return ""
    if normalized.lower().startswith("mailto:"):
        return normalized
    host = parts.hostname or ""
    if "." not in host or len(host) > 253:
        return ""
    if _repeating_segment_re.search(parts.path):
        return ""
    return normalized


def _nonempty_str(v: Any) -> bool:
    return isinstance(v, str) and bool(v.strip())


def _clean_strings(items: Any, max_length: int) -> List[str]:
    if not isinstance(items, list):
        return []
    return [truncate(i.strip(), max_length) for i in items if _nonempty_str(i)]


def lenient_cleanup(data: Dict[str, Any]) -> Dict[str, Any]:
    """Truncate, validate URLs, drop garbage entries and empty optional fields.

    Never raises; a missing name is left empty so downstream validation can
    reject it.
    """
    data = dict(data)
    data["full_name"] = truncate(normalize_string(data.get("full_name")), 100)
    data["headline"] = truncate(normalize_string(data.get("headline"), "Professional"), 150)

    summary = normalize_string(data.get("summary"))
    experience = data.get("experience") if isinstance(data.get("experience"), list) else []
    if not summary and experience:
        first = experience[0] if isinstance(experience[0], dict) else {}
        desc = first.get("description")
        if _nonempty_str(desc):
            summary = desc.strip()[:500]
    if not summary:
        summary = f"Experienced {data['headline'].lower()} with a proven track record."
    data["summary"] = truncate(summary, 2000)

    c = dict(data.get("contact") or {})
    c["email"] = sanitize_email(normalize_string(c.get("email")))
    c["phone"] = truncate(normalize_string(c.get("phone")), 30)
    c["location"] = truncate(normalize_string(c.get("location")), 100)
    c["linkedin"] = validate_url(c.get("linkedin"))
    c["github"] = validate_url(c.get("github"))
    c["website"] = validate_url(c.get("website"))
    if "linkedin.com" in c["website"] and not c["linkedin"]:
        c["linkedin"] = c["website"]
        c["website"] = ""
    if c["website"] and c["website"] == c["linkedin"]:
        c["website"] = ""
    data["contact"] = {k: v for k, v in c.items() if v != ""}

    exps = []
    for e in experience:
        if not isinstance(e, dict) or not (_nonempty_str(e.get("title")) and _nonempty_str(e.get("company"))):
            continue
        e = dict(e)
        e["title"] = truncate(normalize_string(e["title"]), 150)
        e["company"] = truncate(normalize_string(e["company"]), 150)
        e["description"] = truncate(normalize_string(e.get("description")), 2000)
        for key, limit in (("location", 100), ("start_date", 40), ("end_date", 40)):
            value = truncate(normalize_string(e.get(key)), limit)
            if value:
                e[key] = value
            else:
                e.pop(key, None)
        e["highlights"] = [truncate(h, 500) for h in _clean_strings(e.get("highlights"), 500)]
        exps.append(e)
    data["experience"] = exps

    edus = []
    for e in data.get("education") or []:
        if not isinstance(e, dict) or not _nonempty_str(e.get("degree")):
            continue
        e = dict(e)
        e["degree"] = truncate(normalize_string(e["degree"]), 150)
        for key, limit in (("institution", 150), ("location", 100), ("graduation_date", 40), ("gpa", 20)):
            value = truncate(normalize_string(e.get(key)), limit)
            if value:
                e[key] = value
            else:
                e.pop(key, None)
        edus.append(e)
    data["education"] = edus

    groups = []
    for s in data.get("skills") or []:
        if not isinstance(s, dict) or not _nonempty_str(s.get("category")):
            continue
        items = _clean_strings(s.get("items"), 100)
        if items:
            groups.append({"category": truncate(s["category"].strip(), 100), "items": items})
    data["skills"] = groups

    certs = []
    for cert in data.get("certifications") or []:
        if not isinstance(cert, dict) or not _nonempty_str(cert.get("name")):
            continue
        out = {"name": truncate(cert["name"].strip(), 150)}
        issuer = truncate(normalize_string(cert.get("issuer")), 150)
        if issuer:
            out["issuer"] = issuer
        date = normalize_string(cert.get("date"))
        if date:
            out["date"] = date
        url = validate_url(cert.get("url"))
        if url:
            out["url"] = url
        certs.append(out)
    data["certifications"] = certs

    projects = []
    for p in data.get("projects") or []:
        if not isinstance(p, dict) or not _nonempty_str(p.get("title")):
            continue
        out = {
            "title": truncate(p["title"].strip(), 150),
            "description": truncate(normalize_string(p.get("description")), 1000),
            "technologies": [truncate(t, 50) for t in _clean_strings(p.get("technologies"), 50)],
        }
        year = normalize_string(p.get("year"))
        if year:
            m = _year_re.search(year)
            out["year"] = m.group(1) if m else year
        url = validate_url(p.get("url"))
        if url:
            out["url"] = url
        projects.append(out)
    data["projects"] = projects
    return data


def normalize_resume(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Structural transform followed by lenient cleanup. Runs on every extraction result."""
    return lenient_cleanup(structural_transform(raw))


def sanitize_service_error(response_text: str, status: int) -> str:
    """Short, storable message for an error response from the extraction provider."""
    if status == 504:
        return "Service timed out. Please try again."
    if status == 502:
        return "Service temporarily unavailable. Please try again."
    if status == 429:
        return "AI service rate limited. Please wait a moment and try again."
    text = (response_text or "").strip()
    if not text:
        return "An unexpected error occurred. Please try again."
    if text.startswith("<") or "<html" in text.lower():
        return "Resume parsing service unavailable. Please try again."
    if text.startswith("{"):
        try:
            parsed = orjson.loads(text)
        except orjson.JSONDecodeError:
            parsed = None
        err = parsed.get("error") if isinstance(parsed, dict) else None
        if isinstance(err, dict):
            err = err.get("message")
        if isinstance(err, str) and err.strip():
            msg = err.strip()
            return msg[:200] + "..." if len(msg) > 200 else msg
    if len(text) > 200:
        return text[:200] + "..."
    return text
