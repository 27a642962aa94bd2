"""
Prompt templates for chunk translation.
"""

from __future__ import annotations

import json

LANGUAGE_NAMES = {
    "ar": "Arabic",
    "de": "German",
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "it": "Italian",
    "nl": "Dutch",
    "pt": "Portuguese",
}


def language_name(code: str | None) -> str:
    if not code or code == "auto":
        return "the detected source language"
    return LANGUAGE_NAMES.get(code.lower(), code)


def html_system_prompt(source_lang: str, target_lang: str) -> str:
    return (
        "You are a professional translator. Translate the incoming HTML snippet from "
        f"{language_name(source_lang)} to {language_name(target_lang)}. "
        "Preserve ALL HTML tags and attributes exactly as provided. Only translate human "
        "readable text content. Elements marked translate=\"no\" must be copied unchanged. "
        "Return valid HTML for the snippet with identical structure. Do not wrap the "
        "response in any extra tags or metadata."
    )


def html_user_prompt(html: str, tag_path: str, corrective: bool) -> str:
    if corrective:
        instruction = (
            f"IMPORTANT: The snippet uses the following HTML element path: {tag_path}. "
            "The translation must keep the exact same tags and structure. Respond only "
            "with the translated snippet content. Do not add wrapper tags such as "
            "<snippet> or <html>."
        )
    else:
        instruction = (
            "The snippet may contain inline tags. Keep them intact and respond only with "
            "the translated snippet content."
        )
    return f"{instruction}\n\n<snippet>\n{html}\n</snippet>"


def segments_system_prompt(source_lang: str, target_lang: str) -> str:
    return (
        "You are a professional translator. You receive a JSON object mapping segment "
        f"ids to {language_name(source_lang)} text. Translate every value to "
        f"{language_name(target_lang)}. Respond with a JSON object that has exactly the "
        "same keys and the translated text as values. Do not merge, split or drop "
        "segments and do not add commentary."
    )


def segments_user_prompt(segments: dict[str, str]) -> str:
    return json.dumps(segments, ensure_ascii=False, indent=0)


def text_system_prompt(source_lang: str, target_lang: str) -> str:
    return (
        f"Translate the user's text from {language_name(source_lang)} to "
        f"{language_name(target_lang)}. Respond with the translation only."
    )
