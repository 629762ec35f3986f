#!/usr/bin/env python3
"""stochastic_lsystem.py

Stochastic, colored L-systems interpreted by a branching turtle.

Key features:
- Weighted rule alternatives, chosen per occurrence by an injectable chooser.
- Eager grammar validation (rule sets, odds, color symbols).
- Turtle interpreter with push/pop, per-branch length reduction and
  color selection.
- Pluggable canvases: in-memory recording, SVG, and PNG (Pillow).
- JSON configs with many placements drawn onto one shared canvas.

Run:
  python stochastic_lsystem.py render example/coniferous_tree.json out.svg
  python stochastic_lsystem.py render example/dandelion.json out.png --seed 7
  python stochastic_lsystem.py expand example/dandelion.json --generations 2
  python stochastic_lsystem.py random out.json --seed 123
  python stochastic_lsystem.py --help
"""

from __future__ import annotations

import argparse
import colorsys
import itertools
import json
import logging
import math
import os
import random
import sys
from collections.abc import Generator, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Protocol, Union, cast

from PIL import Image, ImageDraw

Point = tuple[float, float]

logger = logging.getLogger(__name__)

DIGITS = frozenset("0123456789")
STRUCTURAL_SYMBOLS = frozenset("+-[]")


# -------------------------
# Errors / Validation
# -------------------------


class LSystemError(Exception):
    pass


class ConfigurationError(LSystemError, ValueError):
    pass


class StructuralError(LSystemError, ValueError):
    pass


class ResourceLimitError(LSystemError, RuntimeError):
    def __init__(self, limit: int, length: int, generation: int) -> None:
        super().__init__(
            f"expansion exceeded max_length={limit} "
            f"(reached {length} symbols in generation {generation})"
        )
        self.limit = limit
        self.length = length
        self.generation = generation


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigurationError(msg)


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _as_float(x: Any, path: str) -> float:
    _require(_is_number(x), f"{path} must be a number")
    value = float(x)
    _require(math.isfinite(value), f"{path} must be finite")
    return value


def _as_int(x: Any, path: str) -> int:
    _require(
        isinstance(x, int) and not isinstance(x, bool), f"{path} must be an integer"
    )
    return int(x)


def _as_str(x: Any, path: str) -> str:
    _require(isinstance(x, str), f"{path} must be a string")
    return cast(str, x)


def _as_bool(x: Any, path: str) -> bool:
    _require(isinstance(x, bool), f"{path} must be a boolean")
    return cast(bool, x)


def _as_dict(x: Any, path: str) -> dict[str, Any]:
    _require(isinstance(x, dict), f"{path} must be an object")
    return cast(dict[str, Any], x)


def _as_list(x: Any, path: str) -> list[Any]:
    _require(isinstance(x, list), f"{path} must be an array")
    return cast(list[Any], x)


def _as_symbol(x: Any, path: str) -> str:
    _require(
        isinstance(x, str) and len(x) == 1, f"{path} must be a single-character string"
    )
    return cast(str, x)


# -------------------------
# Colors
# -------------------------


def _channel(fraction: float) -> int:
    return max(0, min(255, int(round(fraction * 255))))


@dataclass(frozen=True)
class Color:
    """An RGBA color with 0..255 channels."""

    red: int
    green: int
    blue: int
    alpha: int = 255

    def __post_init__(self) -> None:
        for name in ("red", "green", "blue", "alpha"):
            value = getattr(self, name)
            _require(
                isinstance(value, int)
                and not isinstance(value, bool)
                and 0 <= value <= 255,
                f"color {name} must be an integer in 0..255, got {value!r}",
            )

    @classmethod
    def from_hsba(
        cls,
        hue: float,
        saturation: float,
        brightness: float,
        alpha: float = 100.0,
    ) -> Color:
        """Build a color from hue in degrees and percentages for the rest.

        This is the HSB convention of sketching canvases: hue wraps around
        360, saturation, brightness and alpha range over 0..100.
        """
        for name, value in (
            ("saturation", saturation),
            ("brightness", brightness),
            ("alpha", alpha),
        ):
            _require(0 <= value <= 100, f"{name} must be between 0 and 100")
        r, g, b = colorsys.hsv_to_rgb(
            (hue % 360) / 360.0, saturation / 100.0, brightness / 100.0
        )
        return cls(_channel(r), _channel(g), _channel(b), _channel(alpha / 100.0))

    @classmethod
    def from_hex(cls, text: str) -> Color:
        digits = text[1:] if text.startswith("#") else text
        _require(
            len(digits) in (6, 8), f"hex color must be #rrggbb or #rrggbbaa: {text!r}"
        )
        try:
            values = [int(digits[i : i + 2], 16) for i in range(0, len(digits), 2)]
        except ValueError as e:
            raise ConfigurationError(f"invalid hex color {text!r}") from e
        return cls(*values)

    def to_hex(self) -> str:
        return f"#{self.red:02x}{self.green:02x}{self.blue:02x}"

    @property
    def opacity(self) -> float:
        return self.alpha / 255.0

    @property
    def rgba(self) -> tuple[int, int, int, int]:
        return (self.red, self.green, self.blue, self.alpha)


BLACK = Color(0, 0, 0)
WHITE = Color(255, 255, 255)


# -------------------------
# Symbol model
# -------------------------


@dataclass(frozen=True)
class Forward:
    pass


@dataclass(frozen=True)
class Turn:
    sign: int


@dataclass(frozen=True)
class Push:
    pass


@dataclass(frozen=True)
class Pop:
    pass


@dataclass(frozen=True)
class ColorSelect:
    symbol: str


@dataclass(frozen=True)
class Inert:
    symbol: str


Instruction = Union[Forward, Turn, Push, Pop, ColorSelect, Inert]

FORWARD = Forward()
TURN_LEFT = Turn(+1)
TURN_RIGHT = Turn(-1)
PUSH = Push()
POP = Pop()


def classify(
    symbol: str,
    *,
    forward_symbols: Iterable[str] = "F",
    color_symbols: Iterable[str] = (),
) -> Instruction:
    """Map one raw character to its turtle instruction.

    Digits are always color selects; any other key of the color table is too.
    Everything not recognised is inert.
    """
    if symbol in forward_symbols:
        return FORWARD
    if symbol == "+":
        return TURN_LEFT
    if symbol == "-":
        return TURN_RIGHT
    if symbol == "[":
        return PUSH
    if symbol == "]":
        return POP
    if symbol in DIGITS or symbol in color_symbols:
        return ColorSelect(symbol)
    return Inert(symbol)


# -------------------------
# Grammar
# -------------------------


@dataclass(frozen=True)
class RuleSet:
    odds: float
    successor: str


@dataclass(frozen=True)
class Grammar:
    """An immutable, validated stochastic L-system definition.

    ``rules`` maps a symbol to its weighted alternatives; symbols without a
    rule rewrite to themselves. ``colors`` maps color symbols to colors and
    must resolve every digit used in the axiom or in any successor.
    """

    axiom: str
    angle: float
    rules: Mapping[str, Sequence[RuleSet] | str] = field(default_factory=dict)
    colors: Mapping[str, Color] = field(default_factory=dict)
    generations: int = 0
    forward_symbols: frozenset[str] = frozenset("F")
    name: str = "L-System"

    def __post_init__(self) -> None:
        _require(isinstance(self.axiom, str), "axiom must be a string")
        _require(len(self.axiom) > 0, "axiom must be non-empty")
        _as_float(self.angle, "angle")
        _as_int(self.generations, "generations")
        _require(self.generations >= 0, "generations must be >= 0")

        forward = frozenset(self.forward_symbols)
        _require(len(forward) > 0, "forward_symbols must not be empty")
        for sym in forward:
            _as_symbol(sym, "forward_symbols entries")
            _require(
                sym not in STRUCTURAL_SYMBOLS and sym not in DIGITS,
                f"forward symbol {sym!r} collides with a turn, branch or color symbol",
            )

        rules: dict[str, tuple[RuleSet, ...]] = {}
        for sym, options in self.rules.items():
            _as_symbol(sym, "rules keys")
            # a bare string is a single alternative
            if isinstance(options, str):
                options = (RuleSet(1, options),)
            options = tuple(options)
            _require(len(options) > 0, f"rules[{sym!r}] must not be empty")
            for i, option in enumerate(options):
                _require(
                    isinstance(option, RuleSet),
                    f"rules[{sym!r}][{i}] must be a RuleSet",
                )
                odds = _as_float(option.odds, f"rules[{sym!r}][{i}].odds")
                _require(odds >= 0, f"rules[{sym!r}][{i}].odds must be >= 0")
                _as_str(option.successor, f"rules[{sym!r}][{i}].successor")
            _require(
                sum(option.odds for option in options) > 0,
                f"rules[{sym!r}] odds must not all be zero",
            )
            rules[sym] = options

        colors: dict[str, Color] = {}
        for sym, color in self.colors.items():
            _as_symbol(sym, "colors keys")
            _require(
                sym not in STRUCTURAL_SYMBOLS and sym not in forward,
                f"color symbol {sym!r} collides with a turtle symbol",
            )
            _require(isinstance(color, Color), f"colors[{sym!r}] must be a Color")
            colors[sym] = color

        object.__setattr__(self, "forward_symbols", forward)
        object.__setattr__(self, "rules", MappingProxyType(rules))
        object.__setattr__(self, "colors", MappingProxyType(colors))

        # Color symbols must resolve up front so rendering never hits a miss.
        smells: set[str] = set()
        for text in self.texts():
            missing = sorted({ch for ch in text if ch in DIGITS} - set(colors))
            _require(
                not missing,
                f"color symbol(s) {', '.join(missing)} used in {text!r} "
                "are not in the color table",
            )
            smells.update(
                a + b for a, b in zip(text, text[1:]) if a in DIGITS and b in "+-"
            )
        if smells:
            logger.warning(
                "%s: digit before turn (%s) is a color select, not a turn "
                "multiplier",
                self.name,
                ", ".join(sorted(smells)),
            )

    def texts(self) -> list[str]:
        """The axiom followed by every successor text."""
        out = [self.axiom]
        for options in self.rules.values():
            out.extend(option.successor for option in options)
        return out

    @property
    def is_deterministic(self) -> bool:
        return all(
            sum(1 for option in options if option.odds > 0) == 1
            for options in self.rules.values()
        )

    def classify(self, symbol: str) -> Instruction:
        return classify(
            symbol, forward_symbols=self.forward_symbols, color_symbols=self.colors
        )


# -------------------------
# Expansion
# -------------------------


class Chooser(Protocol):
    def choose(self, weights: Sequence[float]) -> int:
        """Return the index of the chosen alternative."""
        ...


class RandomChooser:
    """Weighted choice backed by a private ``random.Random``."""

    def __init__(
        self, seed: int | None = None, *, rng: random.Random | None = None
    ) -> None:
        self._rng = rng if rng is not None else random.Random(seed)

    def choose(self, weights: Sequence[float]) -> int:
        return self._rng.choices(range(len(weights)), weights=weights)[0]


class LSystem:
    """Expands a grammar, picking one weighted alternative per occurrence."""

    def __init__(
        self,
        grammar: Grammar,
        chooser: Chooser | None = None,
        *,
        max_length: int | None = None,
    ) -> None:
        if max_length is not None:
            _as_int(max_length, "max_length")
            _require(max_length > 0, "max_length must be > 0")
        self.grammar = grammar
        self.chooser = chooser if chooser is not None else RandomChooser()
        self.max_length = max_length
        self._weights = {
            sym: [float(option.odds) for option in options]
            for sym, options in grammar.rules.items()
        }

    def _generations(self, generations: int | None) -> int:
        if generations is None:
            return self.grammar.generations
        _as_int(generations, "generations")
        _require(generations >= 0, "generations must be >= 0")
        return generations

    def successor(self, symbol: str) -> str | None:
        """Pick a successor for one occurrence, or None if there is no rule."""
        options = self.grammar.rules.get(symbol)
        if options is None:
            return None
        if len(options) == 1:
            return options[0].successor
        return options[self.chooser.choose(self._weights[symbol])].successor

    def expand(self, generations: int | None = None) -> str:
        n = self._generations(generations)
        current = self.grammar.axiom
        if self.max_length is not None and len(current) > self.max_length:
            raise ResourceLimitError(self.max_length, len(current), 0)

        for generation in range(1, n + 1):
            parts: list[str] = []
            length = 0
            for symbol in current:
                piece = self.successor(symbol)
                if piece is None:
                    piece = symbol
                parts.append(piece)
                length += len(piece)
                if self.max_length is not None and length > self.max_length:
                    raise ResourceLimitError(self.max_length, length, generation)
            current = "".join(parts)
            logger.debug(
                "%s: generation %d has %d symbols",
                self.grammar.name,
                generation,
                len(current),
            )
        return current

    def stream(self, generations: int | None = None) -> Generator[str, None, None]:
        """Yield expanded symbols in order without building the full string.

        Uses an explicit stack of (string, index, depth) frames.
        """
        n = self._generations(generations)
        stack: list[tuple[str, int, int]] = [(self.grammar.axiom, 0, 0)]
        emitted = 0

        while stack:
            s, i, d = stack.pop()
            if i >= len(s):
                continue

            ch = s[i]
            stack.append((s, i + 1, d))

            piece = self.successor(ch) if d < n else None
            if piece is not None:
                # Replacement sits above the continuation, so it is fully
                # traversed first and left-to-right order is kept.
                stack.append((piece, 0, d + 1))
            else:
                emitted += 1
                if self.max_length is not None and emitted > self.max_length:
                    raise ResourceLimitError(self.max_length, emitted, n)
                yield ch


# -------------------------
# Canvases
# -------------------------


class Canvas(Protocol):
    @property
    def width(self) -> float: ...

    @property
    def height(self) -> float: ...

    def set_stroke_color(self, color: Color) -> None: ...

    def draw_line(self, start: Point, end: Point) -> None: ...


@dataclass(frozen=True)
class DrawCommand:
    start: Point
    end: Point
    color: Color


class RecordingCanvas:
    """Keeps every draw call in memory."""

    def __init__(self, width: float = 500.0, height: float = 500.0) -> None:
        self.width = width
        self.height = height
        self.stroke = BLACK
        self.color_changes = 0
        self.commands: list[DrawCommand] = []

    def set_stroke_color(self, color: Color) -> None:
        self.stroke = color
        self.color_changes += 1

    def draw_line(self, start: Point, end: Point) -> None:
        self.commands.append(DrawCommand(start, end, self.stroke))


def _ensure_parent_dir(path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)


def _fmt(x: float, precision: int) -> str:
    # Normalise -0.0 so it never produces "-0" in SVG output.
    if not x:
        x = 0.0
    s = f"{x:.{precision}f}"
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    if s == "-0":
        s = "0"
    return s or "0"


class SvgCanvas:
    """Collects strokes and writes them as SVG paths.

    Consecutive segments sharing a color are merged into one ``<path>``;
    segments that continue from the previous end point extend the current
    subpath instead of starting a new one.
    """

    def __init__(
        self,
        width: float,
        height: float,
        *,
        background: Color | None = None,
        stroke_width: float = 1.0,
        precision: int = 3,
        flip_y: bool = True,
    ) -> None:
        _require(width > 0 and height > 0, "canvas width and height must be > 0")
        _require(0 <= precision <= 10, "canvas precision must be between 0 and 10")
        self.width = width
        self.height = height
        self.background = background
        self.stroke_width = stroke_width
        self.precision = precision
        self.flip_y = flip_y
        self.stroke = BLACK
        # (color, [subpath, ...]); a subpath is a list of points
        self._runs: list[tuple[Color, list[list[Point]]]] = []

    def set_stroke_color(self, color: Color) -> None:
        self.stroke = color

    def draw_line(self, start: Point, end: Point) -> None:
        if not self._runs or self._runs[-1][0] != self.stroke:
            self._runs.append((self.stroke, [[start, end]]))
            return
        subpaths = self._runs[-1][1]
        if subpaths[-1][-1] == start:
            subpaths[-1].append(end)
        else:
            subpaths.append([start, end])

    @property
    def segment_count(self) -> int:
        return sum(
            len(sp) - 1 for _, subpaths in self._runs for sp in subpaths
        )

    def to_svg(self, title: str | None = None) -> str:
        p = self.precision
        w = _fmt(self.width, p)
        h = _fmt(self.height, p)

        lines: list[str] = []
        lines.append('<?xml version="1.0" encoding="UTF-8"?>')
        lines.append(
            '<svg xmlns="http://www.w3.org/2000/svg" version="1.1" '
            f'viewBox="0 0 {w} {h}" width="{w}" height="{h}">'
        )

        if title:
            safe_title = (
                title.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
            )
            lines.append(f"  <title>{safe_title}</title>")

        if self.background is not None:
            lines.append(
                f'  <rect x="0" y="0" width="{w}" height="{h}" '
                f'fill="{self.background.to_hex()}"'
                f"{self._opacity_attr('fill', self.background)} />"
            )

        if self.flip_y:
            # Origin at the bottom-left, y growing upwards.
            lines.append(f'  <g transform="translate(0,{h}) scale(1,-1)">')
            indent = "    "
        else:
            indent = "  "

        stroke_width = _fmt(self.stroke_width, p)
        for color, subpaths in self._runs:
            d = " ".join(
                "M "
                + " L ".join(f"{_fmt(x, p)} {_fmt(y, p)}" for x, y in subpath)
                for subpath in subpaths
            )
            lines.append(
                f'{indent}<path d="{d}" fill="none" stroke="{color.to_hex()}"'
                f"{self._opacity_attr('stroke', color)} "
                f'stroke-width="{stroke_width}" stroke-linecap="round" '
                'stroke-linejoin="round" />'
            )

        if self.flip_y:
            lines.append("  </g>")

        lines.append("</svg>")
        return "\n".join(lines) + "\n"

    def _opacity_attr(self, kind: str, color: Color) -> str:
        if color.alpha == 255:
            return ""
        return f' {kind}-opacity="{_fmt(color.opacity, 3)}"'

    def save(self, out_path: str, title: str | None = None) -> None:
        _ensure_parent_dir(out_path)
        with open(out_path, "w", encoding="utf-8") as f:
            f.write(self.to_svg(title))


class RasterCanvas:
    """Draws onto an RGBA Pillow image and saves it as PNG."""

    def __init__(
        self,
        width: int,
        height: int,
        *,
        background: Color | None = None,
        stroke_width: int = 1,
        flip_y: bool = True,
    ) -> None:
        _require(width > 0 and height > 0, "canvas width and height must be > 0")
        self.width = int(width)
        self.height = int(height)
        self.stroke_width = max(1, int(round(stroke_width)))
        self.flip_y = flip_y
        self.stroke = BLACK
        fill = background.rgba if background is not None else (255, 255, 255, 0)
        self.image = Image.new("RGBA", (self.width, self.height), fill)
        self._draw = ImageDraw.Draw(self.image, "RGBA")

    def _to_px(self, p: Point) -> Point:
        x, y = p
        return (x, self.height - y) if self.flip_y else (x, y)

    def set_stroke_color(self, color: Color) -> None:
        self.stroke = color

    def draw_line(self, start: Point, end: Point) -> None:
        self._draw.line(
            [self._to_px(start), self._to_px(end)],
            fill=self.stroke.rgba,
            width=self.stroke_width,
        )

    def save(self, out_path: str) -> None:
        _ensure_parent_dir(out_path)
        self.image.save(out_path, format="PNG")


# -------------------------
# Turtle interpreter
# -------------------------


@dataclass(frozen=True)
class Cursor:
    position: Point
    heading: float
    length: float
    color: Color


@dataclass
class RenderReport:
    segments: int = 0
    diagnostics: list[LSystemError] = field(default_factory=list)
    max_depth_reached: int = 0
    unclosed_branches: int = 0
    final: Cursor | None = None

    @property
    def ok(self) -> bool:
        return not self.diagnostics and self.unclosed_branches == 0


class TurtleRenderer:
    """Interprets expanded strings against one grammar onto one canvas.

    Structural problems in the string never stop the pass; they are logged
    and collected in the returned :class:`RenderReport`.
    """

    def __init__(
        self,
        grammar: Grammar,
        canvas: Canvas,
        *,
        max_depth: int | None = None,
        default_color: Color = BLACK,
    ) -> None:
        if max_depth is not None:
            _as_int(max_depth, "max_depth")
            _require(max_depth >= 0, "max_depth must be >= 0")
        self.grammar = grammar
        self.canvas = canvas
        self.max_depth = max_depth
        self.default_color = default_color
        self._instructions: dict[str, Instruction] = {}

    def _instruction(self, symbol: str) -> Instruction:
        op = self._instructions.get(symbol)
        if op is None:
            op = self._instructions[symbol] = self.grammar.classify(symbol)
        return op

    def _record(self, report: RenderReport, error: LSystemError) -> None:
        logger.warning("%s: %s", self.grammar.name, error)
        report.diagnostics.append(error)

    def render(
        self,
        symbols: Iterable[str],
        start: Point = (0.0, 0.0),
        heading: float = 90.0,
        length: float = 10.0,
        reduction: float = 1.0,
        *,
        color: Color | None = None,
    ) -> RenderReport:
        reduction = _as_float(reduction, "reduction")
        _require(reduction > 0, "reduction must be > 0")
        length = _as_float(length, "length")

        x, y = float(start[0]), float(start[1])
        h = _as_float(heading, "heading")
        active = color if color is not None else self.default_color
        angle = float(self.grammar.angle)

        stack: list[Cursor] = []
        # bracket depth inside a branch dropped by max_depth; 0 when drawing
        suppressed = 0
        # last color sent to the canvas during this pass
        stroke: Color | None = None
        missing_colors: set[str] = set()
        report = RenderReport()

        for index, sym in enumerate(symbols):
            op = self._instruction(sym)

            if suppressed:
                # inside a capped branch only bracket nesting is tracked
                if isinstance(op, Push):
                    suppressed += 1
                elif isinstance(op, Pop):
                    suppressed -= 1
                continue

            if isinstance(op, Forward):
                rad = math.radians(h)
                nx = x + length * math.cos(rad)
                ny = y + length * math.sin(rad)
                if active != stroke:
                    self.canvas.set_stroke_color(active)
                    stroke = active
                self.canvas.draw_line((x, y), (nx, ny))
                report.segments += 1
                x, y = nx, ny

            elif isinstance(op, Turn):
                h += op.sign * angle

            elif isinstance(op, Push):
                if self.max_depth is not None and len(stack) >= self.max_depth:
                    self._record(
                        report,
                        StructuralError(
                            f"branch depth limit {self.max_depth} reached "
                            f"at index {index}"
                        ),
                    )
                    suppressed = 1
                    continue
                stack.append(Cursor((x, y), h, length, active))
                length /= reduction
                report.max_depth_reached = max(report.max_depth_reached, len(stack))

            elif isinstance(op, Pop):
                if stack:
                    saved = stack.pop()
                    (x, y), h, length, active = (
                        saved.position,
                        saved.heading,
                        saved.length,
                        saved.color,
                    )
                else:
                    self._record(
                        report,
                        StructuralError(f"unbalanced branch close at index {index}"),
                    )

            elif isinstance(op, ColorSelect):
                resolved = self.grammar.colors.get(op.symbol)
                if resolved is not None:
                    active = resolved
                elif op.symbol not in missing_colors:
                    missing_colors.add(op.symbol)
                    self._record(
                        report,
                        ConfigurationError(
                            f"color symbol {op.symbol!r} is not in the color table"
                        ),
                    )

            elif isinstance(op, Inert):
                continue

            else:
                raise AssertionError("unreachable")

        report.unclosed_branches = len(stack) + suppressed
        if report.unclosed_branches:
            logger.warning(
                "%s: %d branch(es) left open at end of string",
                self.grammar.name,
                report.unclosed_branches,
            )
        report.final = Cursor((x, y), h, length, active)
        return report


# -------------------------
# Config parsing
# -------------------------


@dataclass(frozen=True)
class Placement:
    x: float
    y: float
    heading: float = 90.0
    length: float = 10.0
    reduction: float = 1.0


@dataclass(frozen=True)
class CanvasConfig:
    width: float = 500.0
    height: float = 500.0
    background: Color | None = None
    stroke_width: float = 1.0
    precision: int = 3
    flip_y: bool = True


@dataclass(frozen=True)
class SketchConfig:
    grammar: Grammar
    placements: tuple[Placement, ...]
    canvas: CanvasConfig
    seed: int | None = None
    max_length: int | None = None
    max_depth: int | None = None


def parse_color(x: Any, path: str) -> Color:
    """Accept ``"#rrggbb[aa]"`` or ``{"hue", "saturation", "brightness", "alpha"}``."""
    if isinstance(x, str):
        return Color.from_hex(x)
    obj = _as_dict(x, path)
    return Color.from_hsba(
        _as_float(obj.get("hue", 0), f"{path}.hue"),
        _as_float(obj.get("saturation", 0), f"{path}.saturation"),
        _as_float(obj.get("brightness", 0), f"{path}.brightness"),
        _as_float(obj.get("alpha", 100), f"{path}.alpha"),
    )


def _parse_rules(obj: dict[str, Any]) -> dict[str, tuple[RuleSet, ...]]:
    rules: dict[str, tuple[RuleSet, ...]] = {}
    for sym, value in obj.items():
        _as_symbol(sym, "rules keys")
        path = f"rules['{sym}']"
        if isinstance(value, str):
            rules[sym] = (RuleSet(1, value),)
            continue
        options: list[RuleSet] = []
        for i, item in enumerate(_as_list(value, path)):
            if isinstance(item, str):
                options.append(RuleSet(1, item))
                continue
            item = _as_dict(item, f"{path}[{i}]")
            options.append(
                RuleSet(
                    odds=_as_float(item.get("odds", 1), f"{path}[{i}].odds"),
                    successor=_as_str(item.get("successor"), f"{path}[{i}].successor"),
                )
            )
        rules[sym] = tuple(options)
    return rules


def _optional_limit(obj: dict[str, Any], key: str, path: str) -> int | None:
    value = obj.get(key)
    if value is None:
        return None
    return _as_int(value, path)


def parse_config(obj: dict[str, Any]) -> SketchConfig:
    obj = _as_dict(obj, "root")

    colors = {
        _as_symbol(sym, "colors keys"): parse_color(value, f"colors['{sym}']")
        for sym, value in _as_dict(obj.get("colors", {}), "colors").items()
    }

    grammar = Grammar(
        axiom=_as_str(obj.get("axiom", ""), "axiom"),
        angle=_as_float(obj.get("angle", 90), "angle"),
        rules=_parse_rules(_as_dict(obj.get("rules", {}), "rules")),
        colors=colors,
        generations=_as_int(obj.get("generations", 0), "generations"),
        forward_symbols=frozenset(
            _as_str(obj.get("forward_symbols", "F"), "forward_symbols")
        ),
        name=_as_str(obj.get("name", "L-System"), "name"),
    )

    canvas_obj = _as_dict(obj.get("canvas", {}), "canvas")
    background = canvas_obj.get("background")
    canvas = CanvasConfig(
        width=_as_float(canvas_obj.get("width", 500), "canvas.width"),
        height=_as_float(canvas_obj.get("height", 500), "canvas.height"),
        background=(
            parse_color(background, "canvas.background")
            if background not in (None, "none")
            else None
        ),
        stroke_width=_as_float(
            canvas_obj.get("stroke_width", 1.0), "canvas.stroke_width"
        ),
        precision=_as_int(canvas_obj.get("precision", 3), "canvas.precision"),
        flip_y=_as_bool(canvas_obj.get("flip_y", True), "canvas.flip_y"),
    )
    _require(
        canvas.width > 0 and canvas.height > 0, "canvas.width and height must be > 0"
    )
    _require(
        0 <= canvas.precision <= 10, "canvas.precision must be between 0 and 10"
    )
    _require(canvas.stroke_width > 0, "canvas.stroke_width must be > 0")

    placements: list[Placement] = []
    raw_placements = obj.get("placements")
    if raw_placements is None:
        placements.append(Placement(x=canvas.width / 2, y=canvas.height / 2))
    else:
        for i, item in enumerate(_as_list(raw_placements, "placements")):
            path = f"placements[{i}]"
            item = _as_dict(item, path)
            placement = Placement(
                x=_as_float(item.get("x", 0), f"{path}.x"),
                y=_as_float(item.get("y", 0), f"{path}.y"),
                heading=_as_float(item.get("heading", 90), f"{path}.heading"),
                length=_as_float(item.get("length", 10), f"{path}.length"),
                reduction=_as_float(item.get("reduction", 1), f"{path}.reduction"),
            )
            _require(placement.reduction > 0, f"{path}.reduction must be > 0")
            placements.append(placement)
        _require(len(placements) > 0, "placements must not be empty")

    seed = obj.get("seed")
    if seed is not None:
        seed = _as_int(seed, "seed")

    limits = _as_dict(obj.get("limits", {}), "limits")
    max_length = _optional_limit(limits, "max_length", "limits.max_length")
    max_depth = _optional_limit(limits, "max_depth", "limits.max_depth")
    if max_length is not None:
        _require(max_length > 0, "limits.max_length must be > 0")
    if max_depth is not None:
        _require(max_depth >= 0, "limits.max_depth must be >= 0")

    return SketchConfig(
        grammar=grammar,
        placements=tuple(placements),
        canvas=canvas,
        seed=seed,
        max_length=max_length,
        max_depth=max_depth,
    )


def load_json(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        try:
            return cast(dict[str, Any], json.load(f))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e


def dump_json(obj: dict[str, Any], path: str) -> None:
    _ensure_parent_dir(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False)
        f.write("\n")


# -------------------------
# Sketch composition
# -------------------------


def draw_sketch(
    cfg: SketchConfig,
    canvas: Canvas,
    chooser: Chooser | None = None,
    *,
    max_length: int | None = None,
) -> list[RenderReport]:
    """Draw every placement of ``cfg`` onto ``canvas``, in order.

    Stochastic grammars are expanded afresh for each placement so that
    instances differ; deterministic ones are expanded once and reused.
    """
    if chooser is None:
        chooser = RandomChooser(cfg.seed)
    system = LSystem(
        cfg.grammar,
        chooser,
        max_length=max_length if max_length is not None else cfg.max_length,
    )
    renderer = TurtleRenderer(cfg.grammar, canvas, max_depth=cfg.max_depth)

    shared = system.expand() if cfg.grammar.is_deterministic else None
    reports: list[RenderReport] = []
    for placement in cfg.placements:
        symbols = shared if shared is not None else system.expand()
        reports.append(
            renderer.render(
                symbols,
                (placement.x, placement.y),
                placement.heading,
                placement.length,
                placement.reduction,
            )
        )
    return reports


def make_canvas(cfg: CanvasConfig, output_path: str) -> SvgCanvas | RasterCanvas:
    if output_path.lower().endswith(".png"):
        return RasterCanvas(
            int(round(cfg.width)),
            int(round(cfg.height)),
            background=cfg.background,
            stroke_width=int(round(cfg.stroke_width)),
            flip_y=cfg.flip_y,
        )
    return SvgCanvas(
        cfg.width,
        cfg.height,
        background=cfg.background,
        stroke_width=cfg.stroke_width,
        precision=cfg.precision,
        flip_y=cfg.flip_y,
    )


# -------------------------
# Random config generator
# -------------------------


def _random_balanced_word(
    rng: random.Random,
    length: int,
    *,
    palette: str = "",
    p_branch: float = 0.20,
    p_color: float = 0.25,
) -> str:
    """Generate a random successor with balanced brackets.

    Produces symbols from: F, +, -, [, ] and the palette digits. A color
    digit only ever appears right before an F.
    """
    word: list[str] = []
    depth = 0

    for _ in range(length):
        r = rng.random()
        if r < p_branch and depth < 3:
            word.append("[")
            depth += 1
            continue
        # At depth 0 the ']' share falls through to forward/turn choices.
        if r < p_branch * 2 and depth > 0:
            word.append("]")
            depth -= 1
            continue

        t = rng.random()
        if t < 0.55:
            if palette and rng.random() < p_color:
                word.append(rng.choice(palette))
            word.append("F")
        elif t < 0.775:
            word.append("+")
        else:
            word.append("-")

    word.extend("]" * depth)

    if "F" not in word:
        word.append("F")

    return "".join(word)


def generate_random_config(seed: int | None = None) -> dict[str, Any]:
    rng = random.Random(seed)

    angle = rng.choice([15, 20, 22.5, 25, 30, 36, 45])
    generations = rng.randint(2, 4)
    length = rng.choice([4, 6, 8, 10])
    reduction = rng.choice([1.0, 1.1, 1.25, 1.5])

    palette = "".join(str(i) for i in range(1, rng.randint(2, 5) + 1))
    colors = {
        sym: {
            "hue": rng.randint(0, 359),
            "saturation": rng.randint(30, 100),
            "brightness": rng.randint(25, 90),
            "alpha": 100,
        }
        for sym in palette
    }

    alternatives = [
        {
            "odds": rng.randint(1, 4),
            "successor": _random_balanced_word(
                rng, rng.randint(6, 14), palette=palette
            ),
        }
        for _ in range(rng.randint(1, 3))
    ]

    cfg: dict[str, Any] = {
        "name": "Random stochastic L-System",
        "axiom": rng.choice(palette) + "F",
        "angle": angle,
        "generations": generations,
        "rules": {"F": alternatives},
        "colors": colors,
        "seed": seed,
        "limits": {"max_length": 2_000_000},
        "canvas": {"width": 500, "height": 500, "background": "#ffffff"},
        "placements": [
            {
                "x": 250,
                "y": 20,
                "heading": 90,
                "length": length,
                "reduction": reduction,
            }
        ],
    }

    # Internal sanity check: generated config must always parse cleanly.
    parse_config(cfg)
    return cfg


# -------------------------
# CLI / Help
# -------------------------

HELP_EPILOG = r"""
INPUT JSON SYNTAX

  name: string (optional)
      Label for the system; written into the SVG <title>.

  axiom: string (required)
      The initial word.

  angle: number degrees (default 90)
      Turn unit. Each '+' adds one unit to the heading, each '-' removes one.

  generations: integer >= 0 (default 0)
      Number of rewriting passes.

  rules: object mapping single character -> alternatives (optional)
      Alternatives are a list of {"odds": number >= 0, "successor": string}.
      A plain string is shorthand for a single alternative. Symbols without
      a rule rewrite to themselves. One alternative is drawn per occurrence
      with probability odds / sum(odds).

  colors: object mapping single character -> color (optional)
      A color is "#rrggbb", "#rrggbbaa" or
      {"hue": 0..360, "saturation": 0..100, "brightness": 0..100, "alpha": 0..100}.
      Every digit used in the axiom or a successor must be listed here.

  forward_symbols: string (default "F")
      Characters that draw a segment forward.

  seed: integer (optional)
      Seed for the weighted choices.

  limits: object (optional)
      limits.max_length: abort expansion past this many symbols.
      limits.max_depth:  ignore branches nested deeper than this.

  canvas: object (optional)
      width, height (default 500), background color, stroke_width (default 1),
      precision (SVG digits, default 3), flip_y (default true; origin at the
      bottom-left).

  placements: array (optional)
      One entry per instance: {"x", "y", "heading" (deg, default 90),
      "length" (default 10), "reduction" (default 1)}. Every '[' divides the
      segment length by the reduction. Defaults to a single instance at the
      canvas centre.

TURTLE SYMBOLS

  F       draw forward
  + / -   turn left / right by one angle unit
  [ / ]   save / restore position, heading, length and color
  0-9     select a color from the color table
  other   no effect (e.g. X as a growth-only placeholder)

Examples

  python stochastic_lsystem.py render example/coniferous_tree.json tree.svg
  python stochastic_lsystem.py render example/purple_flower.json flower.png
  python stochastic_lsystem.py random out.json --seed 123
"""


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="stochastic_lsystem.py",
        description="Stochastic, colored L-system renderer (SVG or PNG).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    p.add_argument(
        "-v", "--verbose", action="store_true", help="Log expansion details."
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    pr = sub.add_parser(
        "render",
        help="Render a JSON config to SVG (or PNG when OUTPUT ends in .png).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    pr.add_argument("config", help="Path to the input JSON config.")
    pr.add_argument("output", help="Path to write the SVG or PNG output.")
    pr.add_argument(
        "--seed", type=int, default=None, help="Override the config seed."
    )
    pr.add_argument(
        "--max-length",
        type=int,
        default=None,
        help="Override limits.max_length for this run.",
    )

    pv = sub.add_parser(
        "validate",
        help="Validate a JSON config and print a brief summary.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    pv.add_argument("config", help="Path to the input JSON config.")

    pe = sub.add_parser(
        "expand",
        help="Print the expanded string of a JSON config.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    pe.add_argument("config", help="Path to the input JSON config.")
    pe.add_argument(
        "--generations",
        type=int,
        default=None,
        help="Override the config generation count.",
    )
    pe.add_argument(
        "--seed", type=int, default=None, help="Override the config seed."
    )

    pg = sub.add_parser(
        "random",
        help="Generate a random stochastic config for experimentation.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    pg.add_argument("output", help="Where to write the generated JSON file.")
    pg.add_argument(
        "--seed", type=int, default=None, help="Seed for repeatable randomness."
    )

    return p


# -------------------------
# Commands
# -------------------------


def _seeded(cfg: SketchConfig, seed: int | None) -> RandomChooser:
    return RandomChooser(seed if seed is not None else cfg.seed)


def cmd_render(
    config_path: str,
    output_path: str,
    seed: int | None = None,
    max_length: int | None = None,
) -> None:
    cfg = parse_config(load_json(config_path))
    canvas = make_canvas(cfg.canvas, output_path)

    reports = draw_sketch(cfg, canvas, _seeded(cfg, seed), max_length=max_length)
    problems = sum(len(r.diagnostics) for r in reports)
    logger.info(
        "%s: %d placement(s), %d segment(s), %d structural problem(s)",
        cfg.grammar.name,
        len(reports),
        sum(r.segments for r in reports),
        problems,
    )

    if isinstance(canvas, SvgCanvas):
        canvas.save(output_path, title=cfg.grammar.name)
    else:
        canvas.save(output_path)


_VALIDATE_SYMBOL_LIMIT = 10_000


def cmd_validate(config_path: str) -> None:
    cfg = parse_config(load_json(config_path))
    g = cfg.grammar

    print(f"name: {g.name}")
    print(f"axiom length: {len(g.axiom)}")
    print(f"generations: {g.generations}")
    print(
        f"rules: {len(g.rules)} "
        f"({sum(len(options) for options in g.rules.values())} alternatives, "
        f"{'deterministic' if g.is_deterministic else 'stochastic'})"
    )
    print(f"colors: {len(g.colors)}")
    print(f"angle: {g.angle}")
    print(f"placements: {len(cfg.placements)}")
    print(
        f"canvas: {_fmt(cfg.canvas.width, 3)}x{_fmt(cfg.canvas.height, 3)} "
        f"flip_y={cfg.canvas.flip_y}"
    )

    # Bounded streaming sample catches render-time problems without paying
    # for an exponential expansion.
    system = LSystem(g, RandomChooser(cfg.seed))
    bounded = list(itertools.islice(system.stream(), _VALIDATE_SYMBOL_LIMIT))
    truncated = len(bounded) == _VALIDATE_SYMBOL_LIMIT

    first = cfg.placements[0]
    report = TurtleRenderer(g, RecordingCanvas(), max_depth=cfg.max_depth).render(
        bounded, (first.x, first.y), first.heading, first.length, first.reduction
    )
    sym_label = f"{len(bounded)}+" if truncated else str(len(bounded))
    print(f"symbols (sampled): {sym_label}")
    print(f"segments: {report.segments}")
    print(f"max branch depth: {report.max_depth_reached}")
    print(f"structural problems: {len(report.diagnostics)}")
    if truncated:
        print(
            f"warning: expansion exceeds {_VALIDATE_SYMBOL_LIMIT} symbols; "
            "geometry stats are based on the first portion only"
        )
    if not report.segments:
        raise ConfigurationError("Config produces no drawable geometry")


def cmd_expand(
    config_path: str, generations: int | None = None, seed: int | None = None
) -> None:
    cfg = parse_config(load_json(config_path))
    system = LSystem(cfg.grammar, _seeded(cfg, seed), max_length=cfg.max_length)
    print(system.expand(generations))


def cmd_random(output_path: str, seed: int | None) -> None:
    cfg = generate_random_config(seed)
    dump_json(cfg, output_path)


def main(argv: list[str] | None = None) -> int:
    ap = build_argparser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.cmd == "render":
            cmd_render(args.config, args.output, args.seed, args.max_length)
        elif args.cmd == "validate":
            cmd_validate(args.config)
        elif args.cmd == "expand":
            cmd_expand(args.config, args.generations, args.seed)
        elif args.cmd == "random":
            cmd_random(args.output, args.seed)
        else:
            raise AssertionError("unreachable")
    except ConfigurationError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    except ResourceLimitError as e:
        print(f"Resource limit: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"File error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
