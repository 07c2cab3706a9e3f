"""
Caption overlay drawing with Pillow.

Every function here is pure: plain caption data in, a frame-sized RGBA image
out. The same routines serve the worker processes and the inline path.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from PIL import Image, ImageDraw, ImageFilter, ImageFont

from captionburn.schemas.caption import CaptionSegment, CaptionStyle

logger = logging.getLogger(__name__)

BOX_PADDING = 12
PROGRESSIVE_BOX_PADDING = 8
PROGRESSIVE_LINE_GAP = 8
SHADOW_COLOR = (0, 0, 0, 178)  # rgba(0,0,0,0.7)
SHADOW_OFFSET = (2, 2)
SHADOW_BLUR_RADIUS = 2
EMPHASIS_SCALE = 1.05

# Map font names to candidate paths (macOS -> Linux fallback)
FONT_CANDIDATES: dict[str, list[str]] = {
    "Arial": [
        "/System/Library/Fonts/Supplemental/Arial.ttf",
        "/usr/share/fonts/truetype/msttcorefonts/Arial.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
    ],
    "Arial Bold": [
        "/System/Library/Fonts/Supplemental/Arial Bold.ttf",
        "/usr/share/fonts/truetype/msttcorefonts/Arial_Bold.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
    ],
    "Helvetica Neue Medium": [
        "/System/Library/Fonts/HelveticaNeue.ttc",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
    ],
    "SF Pro Display Semibold": [
        "/Library/Fonts/SF-Pro-Display-Semibold.otf",
        "/System/Library/Fonts/SFNS.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    ],
    "Futura Bold": [
        "/System/Library/Fonts/Supplemental/Futura.ttc",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    ],
    "Impact": [
        "/System/Library/Fonts/Supplemental/Impact.ttf",
        "/usr/share/fonts/truetype/msttcorefonts/Impact.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    ],
}
DEFAULT_FONT_CANDIDATES = [
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
    "/System/Library/Fonts/Helvetica.ttc",
]

_MEASURE = ImageDraw.Draw(Image.new("RGBA", (1, 1)))


@dataclass
class _Box:
    rect: tuple[float, float, float, float]
    fill: tuple[int, int, int, int]


@dataclass
class _Text:
    xy: tuple[float, float]
    text: str
    font: ImageFont.ImageFont | ImageFont.FreeTypeFont
    fill: tuple[int, int, int, int]


def parse_color(color: str, opacity: float = 1.0) -> Optional[tuple[int, int, int, int]]:
    """Parse #RGB / #RRGGBB / #RRGGBBAA into RGBA; None for transparent."""
    if not color or color.lower() == "transparent":
        return None
    hex_color = color.lstrip("#")
    if len(hex_color) == 3:
        hex_color = "".join([c * 2 for c in hex_color])
    if len(hex_color) not in (6, 8):
        raise ValueError(f"Unsupported color: {color}")
    r = int(hex_color[0:2], 16)
    g = int(hex_color[2:4], 16)
    b = int(hex_color[4:6], 16)
    # 8-char hex (RRGGBBAA): embedded alpha overrides full opacity
    alpha = int(hex_color[6:8], 16) if len(hex_color) == 8 else 255
    alpha = int(alpha * opacity)
    if alpha <= 0:
        return None
    return (r, g, b, alpha)


def apply_text_transform(text: str, transform: str) -> str:
    if transform == "uppercase":
        return text.upper()
    if transform == "lowercase":
        return text.lower()
    if transform == "capitalize":
        return " ".join(w[:1].upper() + w[1:] for w in text.split(" "))
    return text


@lru_cache(maxsize=64)
def resolve_font(font_name: str, size: int) -> ImageFont.ImageFont | ImageFont.FreeTypeFont:
    """Load a font by name, falling back to system sans fonts then Pillow's default."""
    candidates = FONT_CANDIDATES.get(font_name, [])
    all_candidates = candidates + [c for c in DEFAULT_FONT_CANDIDATES if c not in candidates]
    for candidate_path in all_candidates:
        try:
            return ImageFont.truetype(candidate_path, size)
        except OSError:
            continue
    logger.warning(f"[TEXT] No font file found for '{font_name}', using Pillow default")
    return ImageFont.load_default(size=size)


def _scaled(style: CaptionStyle, value: float) -> int:
    return max(1, int(round(value * style.scale)))


def _stroke_width(style: CaptionStyle) -> int:
    if style.stroke_width <= 0 or parse_color(style.stroke_color) is None:
        return 0
    return int(round(style.stroke_width * style.scale))


def _text_size(text: str, font, stroke: int) -> tuple[float, float]:
    left, top, right, bottom = _MEASURE.textbbox((0, 0), text or " ", font=font, stroke_width=stroke)
    return right - left, bottom - top


def _anchor(style: CaptionStyle, width: int, height: int) -> tuple[float, float]:
    return style.position.x / 100 * width, style.position.y / 100 * height


def _aligned_left(anchor_x: float, block_width: float, align: str) -> float:
    if align == "left":
        return anchor_x
    if align == "right":
        return anchor_x - block_width
    return anchor_x - block_width / 2


def _compose(
    width: int,
    height: int,
    boxes: list[_Box],
    texts: list[_Text],
    stroke: int,
    stroke_fill: Optional[tuple[int, int, int, int]],
) -> Image.Image:
    img = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)
    for box in boxes:
        draw.rounded_rectangle(box.rect, radius=4, fill=box.fill)

    shadow = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    shadow_draw = ImageDraw.Draw(shadow)
    for t in texts:
        x, y = t.xy
        shadow_draw.text(
            (x + SHADOW_OFFSET[0], y + SHADOW_OFFSET[1]),
            t.text,
            font=t.font,
            fill=SHADOW_COLOR,
            stroke_width=stroke,
            stroke_fill=SHADOW_COLOR,
        )
    img.alpha_composite(shadow.filter(ImageFilter.GaussianBlur(SHADOW_BLUR_RADIUS)))

    draw = ImageDraw.Draw(img)
    for t in texts:
        if stroke and stroke_fill:
            draw.text(t.xy, t.text, font=t.font, fill=t.fill, stroke_width=stroke, stroke_fill=stroke_fill)
        else:
            draw.text(t.xy, t.text, font=t.font, fill=t.fill)
    return img


def render_static_caption(caption: CaptionSegment, width: int, height: int) -> Image.Image:
    """Draw the whole caption text centred on its position."""
    style = caption.style
    font_size = _scaled(style, style.font_size)
    font = resolve_font(style.font, font_size)
    stroke = _stroke_width(style)
    text_fill = parse_color(style.text_color) or (255, 255, 255, 255)
    bg_fill = parse_color(style.background_color)

    lines = apply_text_transform(caption.text, style.text_transform).split("\n")
    line_height = int(font_size * 1.2)
    sizes = [_text_size(line, font, stroke) for line in lines]
    block_width = max(w for w, _ in sizes)
    block_height = line_height * len(lines)

    anchor_x, anchor_y = _anchor(style, width, height)
    left = anchor_x - block_width / 2
    top = anchor_y - block_height / 2

    boxes = []
    if bg_fill:
        boxes.append(
            _Box((left - BOX_PADDING, top - BOX_PADDING, left + block_width + BOX_PADDING, top + block_height + BOX_PADDING), bg_fill)
        )

    texts = []
    for i, (line, (line_width, _)) in enumerate(zip(lines, sizes)):
        if style.text_align == "left":
            x = left
        elif style.text_align == "right":
            x = left + block_width - line_width
        else:
            x = left + (block_width - line_width) / 2
        texts.append(_Text((x, top + i * line_height), line, font, text_fill))

    return _compose(width, height, boxes, texts, stroke, parse_color(style.stroke_color))


def _word_texts(caption: CaptionSegment) -> list[str]:
    return [apply_text_transform(w.word.strip(), caption.style.text_transform) for w in caption.words or []]


def _render_karaoke(caption: CaptionSegment, word_index: int, width: int, height: int) -> Image.Image:
    style = caption.style
    font_size = _scaled(style, style.font_size)
    font = resolve_font(style.font, font_size)
    emphasis_font = resolve_font(style.font, max(1, int(round(font_size * EMPHASIS_SCALE))))
    stroke = _stroke_width(style)
    word_padding = 4 * style.scale
    word_spacing = 12 * style.scale
    text_fill = parse_color(style.text_color) or (255, 255, 255, 255)
    highlight_fill = parse_color(style.highlighter_color)
    bg_fill = parse_color(style.background_color)

    words = _word_texts(caption)
    fonts = [
        emphasis_font if (i == word_index and style.emphasize_mode) else font
        for i in range(len(words))
    ]
    sizes = [_text_size(w, f, stroke) for w, f in zip(words, fonts)]
    line_height = max(h for _, h in sizes)
    total_width = sum(w + 2 * word_padding for w, _ in sizes) + word_spacing * (len(words) - 1)

    anchor_x, anchor_y = _anchor(style, width, height)
    left = _aligned_left(anchor_x, total_width, style.text_align)
    top = anchor_y - line_height / 2

    boxes = []
    if bg_fill:
        boxes.append(
            _Box((left - BOX_PADDING, top - BOX_PADDING, left + total_width + BOX_PADDING, top + line_height + BOX_PADDING), bg_fill)
        )

    texts = []
    x = left
    for i, (word, word_font, (word_width, word_height)) in enumerate(zip(words, fonts, sizes)):
        cell_width = word_width + 2 * word_padding
        y = top + (line_height - word_height) / 2
        fill = text_fill
        if i == word_index and highlight_fill:
            if style.emphasize_mode:
                fill = highlight_fill
            else:
                boxes.append(_Box((x, top - word_padding, x + cell_width, top + line_height + word_padding), highlight_fill))
        texts.append(_Text((x + word_padding, y), word, word_font, fill))
        x += cell_width + word_spacing

    return _compose(width, height, boxes, texts, stroke, parse_color(style.stroke_color))


def _render_progressive(caption: CaptionSegment, word_index: int, width: int, height: int) -> Image.Image:
    style = caption.style
    font_size = _scaled(style, style.font_size)
    font = resolve_font(style.font, font_size)
    emphasis_font = resolve_font(style.font, max(1, int(round(font_size * EMPHASIS_SCALE))))
    stroke = _stroke_width(style)
    text_fill = parse_color(style.text_color) or (255, 255, 255, 255)
    highlight_fill = parse_color(style.highlighter_color)
    bg_fill = parse_color(style.background_color)

    words = _word_texts(caption)[: word_index + 1]
    line_height = font_size + PROGRESSIVE_LINE_GAP
    block_height = line_height * len(words)

    anchor_x, anchor_y = _anchor(style, width, height)
    top = anchor_y - block_height / 2

    boxes = []
    texts = []
    for i, word in enumerate(words):
        current = i == word_index
        word_font = emphasis_font if (current and style.emphasize_mode) else font
        word_width, word_height = _text_size(word, word_font, stroke)
        x = _aligned_left(anchor_x, word_width, style.text_align)
        y = top + i * line_height
        fill = text_fill
        box_fill = bg_fill
        if current and highlight_fill:
            if style.emphasize_mode:
                fill = highlight_fill
            else:
                box_fill = highlight_fill
        if box_fill:
            boxes.append(
                _Box(
                    (
                        x - PROGRESSIVE_BOX_PADDING,
                        y - PROGRESSIVE_BOX_PADDING / 2,
                        x + word_width + PROGRESSIVE_BOX_PADDING,
                        y + word_height + PROGRESSIVE_BOX_PADDING / 2,
                    ),
                    box_fill,
                )
            )
        texts.append(_Text((x, y), word, word_font, fill))

    return _compose(width, height, boxes, texts, stroke, parse_color(style.stroke_color))


def render_word_highlight(caption: CaptionSegment, word_index: int, width: int, height: int) -> Image.Image:
    """Draw the caption with word_index highlighted (karaoke) or revealed (progressive)."""
    if not caption.words or not 0 <= word_index < len(caption.words):
        raise IndexError(f"word index {word_index} out of range for caption {caption.id}")
    if caption.style.render_mode == "progressive":
        return _render_progressive(caption, word_index, width, height)
    return _render_karaoke(caption, word_index, width, height)
