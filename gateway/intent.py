"""Keyword-based intent classification: image generation vs. conversation.

A heuristic. The first image token found wins and anything else is "text";
false positives and negatives are accepted, and no confidence is produced.
Matching is case-insensitive substring search for CJK tokens and word-boundary
search for English tokens, so "drawer" does not count as "draw".
"""
from __future__ import annotations
import re
from typing import Optional

from .providers.types import IMAGE, TEXT

IMAGE_TOKENS_ZH = (
    "畫", "画", "繪", "绘", "生成圖", "生成图", "圖片", "图片", "圖像", "图像",
    "插畫", "插画", "插圖", "插图", "海報", "海报", "照片", "頭像", "头像",
    "設計一張", "设计一张", "做一張圖", "做一张图", "桌布", "壁紙", "壁纸",
)

IMAGE_TOKENS_EN = (
    "draw", "drawing", "sketch", "paint", "painting", "picture", "image", "illustration",
    "illustrate", "poster", "wallpaper", "avatar", "logo", "render", "photo",
)

_EN_PATTERN = re.compile(r"\b(" + "|".join(IMAGE_TOKENS_EN) + r")s?\b", re.IGNORECASE)


def match_image_token(text: str) -> Optional[str]:
    """Return the first image-intent token found in `text`, or None."""
    lowered = text.lower()
    for token in IMAGE_TOKENS_ZH:
        if token in lowered:
            return token
    m = _EN_PATTERN.search(text)
    if m:
        return m.group(1).lower()
    return None


def classify(text: str) -> str:
    return IMAGE if match_image_token(text) else TEXT
