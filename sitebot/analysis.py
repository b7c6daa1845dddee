from __future__ import annotations

import re
from dataclasses import dataclass

_IMG_RE = re.compile(r"<img")
_IMG_WITH_ALT_RE = re.compile(r"""<img[^>]+alt=["'][^"']+["']""")
_TAG_RE = re.compile(r"<[a-z]+")
_SECTION_RE = re.compile(r"<section")

LARGE_DOM_NODES = 500

# Display name, then the markup fragments that mark the color as used.
PALETTE_MARKERS = [
    ("Indigo", ("indigo",)),
    ("Blue", ("blue",)),
    ("Purple", ("purple",)),
    ("Gray", ("gray", "zinc")),
    ("Red", ("red",)),
    ("Emerald", ("green", "emerald")),
    ("Yellow", ("yellow",)),
    ("White", ("bg-white", "bg-[#ffffff]")),
    ("Black", ("bg-black", "bg-[#000000]")),
]
PALETTE_LIMIT = 5


@dataclass(frozen=True, slots=True)
class SeoReport:
    has_h1: bool
    image_alt_ratio: int
    dom_size: int


@dataclass(frozen=True, slots=True)
class SiteAnalysis:
    score: int
    seo: SeoReport
    palette: tuple[str, ...]
    structure: tuple[str, ...]
    uses_tailwind: bool
    uses_animations: bool


def analyze(content: str) -> SiteAnalysis:
    """Static heuristics over a generated document: score, SEO basics, palette, page outline."""
    images = len(_IMG_RE.findall(content))
    images_with_alt = len(_IMG_WITH_ALT_RE.findall(content))
    dom_size = len(_TAG_RE.findall(content))
    has_h1 = "<h1" in content

    seo = SeoReport(
        has_h1=has_h1,
        image_alt_ratio=round(images_with_alt / images * 100) if images else 100,
        dom_size=dom_size,
    )

    score = 85
    if has_h1:
        score += 5
    if images_with_alt == images:
        score += 5
    if dom_size < LARGE_DOM_NODES:
        score += 5

    palette = [name for name, markers in PALETTE_MARKERS if any(marker in content for marker in markers)]

    structure: list[str] = []
    if "<header" in content:
        structure.append("Header")
    if "<hero" in content or "Hero" in content:
        structure.append("Hero Section")
    for idx in range(len(_SECTION_RE.findall(content))):
        structure.append(f"Section {idx + 1}")
    if "<footer" in content:
        structure.append("Footer")

    return SiteAnalysis(
        score=min(100, score),
        seo=seo,
        palette=tuple(palette[:PALETTE_LIMIT]),
        structure=tuple(structure),
        uses_tailwind="tailwind" in content,
        uses_animations="animate-" in content or "@keyframes" in content,
    )


def format_analysis(analysis: SiteAnalysis) -> str:
    lines: list[str] = []
    lines.append(f"Оценка качества: {analysis.score}/100")
    lines.append("")
    lines.append("SEO:")
    lines.append(f"- Заголовок H1: {'есть' if analysis.seo.has_h1 else 'нет'}")
    lines.append(f"- Изображения с alt: {analysis.seo.image_alt_ratio}%")
    lines.append(f"- Размер DOM: {analysis.seo.dom_size} узлов")
    lines.append("")
    lines.append(f"Палитра: {', '.join(analysis.palette) if analysis.palette else 'не определена'}")
    lines.append("")
    lines.append("Структура:")
    if analysis.structure:
        for item in analysis.structure:
            lines.append(f"- {item}")
    else:
        lines.append("- разделы не найдены")
    lines.append("")

    tech = []
    if analysis.uses_tailwind:
        tech.append("Tailwind CSS")
    if analysis.uses_animations:
        tech.append("анимации")
    lines.append(f"Технологии: {', '.join(tech) if tech else 'чистый HTML'}")
    return "\n".join(lines)
