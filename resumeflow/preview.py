from __future__ import annotations

from typing import Any, Dict, List, Optional

import orjson


def extract_top_skills(skills: Any, limit: int = 4) -> List[str]:
    out: List[str] = []
    if not isinstance(skills, list):
        return out
    for group in skills:
        items = group.get("items") if isinstance(group, dict) else None
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, str) and item.strip():
                out.append(item.strip())
                if len(out) >= limit:
                    return out
    return out


def extract_preview_fields(content: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Denormalised summary stored next to the published content."""
    if not content:
        return {
            "preview_name": None,
            "preview_headline": None,
            "preview_location": None,
            "preview_exp_count": 0,
            "preview_edu_count": 0,
            "preview_skills": "[]",
        }
    contact = content.get("contact") or {}
    experience = content.get("experience")
    education = content.get("education")
    return {
        "preview_name": content.get("full_name") or None,
        "preview_headline": content.get("headline") or None,
        "preview_location": contact.get("location") or None,
        "preview_exp_count": len(experience) if isinstance(experience, list) else 0,
        "preview_edu_count": len(education) if isinstance(education, list) else 0,
        "preview_skills": orjson.dumps(extract_top_skills(content.get("skills"), 4)).decode(),
    }
