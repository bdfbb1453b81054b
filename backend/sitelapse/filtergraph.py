# backend/sitelapse/filtergraph.py
"""
Small typed builder for ffmpeg ``-filter_complex`` graphs.

A graph is an ordered list of steps; each step reads labelled pads, runs a
chain of filters and writes one labelled pad:

    [0:v]scale=1280:720[scaled];[1:v]scale=200:-1[logo];[scaled][logo]overlay=W-w-10:10[with_logo]

Nothing is turned into text until ``render()``.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .frames import format_date

RESOLUTIONS = {
    "720": (1280, 720),
    "HD": (1920, 1080),
    "4K": (3840, 2160),
}
DEFAULT_RESOLUTION = "HD"

LOGO_WIDTH = 200
WATERMARK_ALPHA = 0.2
FONT_SIZE = 60
TEXT_STYLE = (("fontsize", str(FONT_SIZE)), ("fontcolor", "white"), ("box", "1"), ("boxcolor", "black@0.5"))


def _backslash(value: str, specials: str) -> str:
    return "".join("\\" + ch if ch in specials else ch for ch in value)


def escape_option(value: str) -> str:
    """
    Escape an option value for use inside a ``-filter_complex`` graph.

    ffmpeg unescapes twice: once when splitting the graph into filters and
    once when splitting a filter's arguments into ``key=value`` pairs.
    """
    return _backslash(_backslash(value, "\\':"), "\\'[],;")


def escape_text(text: str) -> str:
    """Escape drawtext ``text``; drawtext expands ``%`` sequences after the two option levels."""
    return escape_option(_backslash(text, "\\%"))


@dataclass(frozen=True)
class Filter:
    name: str
    args: Tuple[str, ...] = ()
    options: Tuple[Tuple[str, str], ...] = ()

    def render(self) -> str:
        parts = list(self.args) + [f"{k}={v}" for k, v in self.options]
        return f"{self.name}={':'.join(parts)}" if parts else self.name


@dataclass(frozen=True)
class FilterStep:
    inputs: Tuple[str, ...]
    filters: Tuple[Filter, ...]
    output: str

    def render(self) -> str:
        ins = "".join(f"[{label}]" for label in self.inputs)
        chain = ",".join(f.render() for f in self.filters)
        return f"{ins}{chain}[{self.output}]"


@dataclass
class FilterGraph:
    steps: List[FilterStep] = field(default_factory=list)

    def add(self, inputs: Sequence[str], output: str, *filters: Filter) -> str:
        if not filters:
            raise ValueError("a filter step needs at least one filter")
        produced = {s.output for s in self.steps}
        for label in inputs:
            if ":" not in label and label not in produced:
                raise ValueError(f"label [{label}] consumed before it is produced")
        if output in produced:
            raise ValueError(f"label [{output}] produced twice")
        self.steps.append(FilterStep(tuple(inputs), tuple(filters), output))
        return output

    @property
    def output(self) -> Optional[str]:
        return self.steps[-1].output if self.steps else None

    def filter_names(self) -> List[str]:
        return [f.name for s in self.steps for f in s.filters]

    def render(self) -> str:
        return ";".join(s.render() for s in self.steps)


def resolution_size(resolution: Optional[str]) -> Tuple[int, int]:
    return RESOLUTIONS.get(str(resolution or ""), RESOLUTIONS[DEFAULT_RESOLUTION])


def _drawtext(text: str, x: str, y: str, font_file: str = "", enable: str = "") -> Filter:
    options = [("text", escape_text(text))]
    if font_file:
        options.append(("fontfile", escape_option(font_file)))
    options += [("x", x), ("y", y)]
    options += list(TEXT_STYLE)
    if enable:
        options.append(("enable", f"'{enable}'"))
    return Filter("drawtext", options=tuple(options))


def batch_graph(timestamps: Sequence[str], resolution: Optional[str] = None,
                logo_input: Optional[int] = None, watermark_input: Optional[int] = None,
                show_date: bool = False, caption: str = "", font_file: str = "") -> FilterGraph:
    """
    Graph for one batch of frames read from input 0.

    ``logo_input``/``watermark_input`` are the ffmpeg input indexes of the
    overlay images, ``timestamps`` the batch's frames in order (used for the
    per-frame date caption).
    """
    width, height = resolution_size(resolution)
    graph = FilterGraph()
    current = graph.add(["0:v"], "scaled", Filter("scale", (str(width), str(height))))

    if logo_input is not None:
        graph.add([f"{logo_input}:v"], "logo", Filter("scale", (str(LOGO_WIDTH), "-1")))
        current = graph.add([current, "logo"], "with_logo", Filter("overlay", ("W-w-10", "10")))

    if watermark_input is not None:
        graph.add([f"{watermark_input}:v"], "watermark",
                  Filter("format", ("rgba",)),
                  Filter("colorchannelmixer", options=(("aa", str(WATERMARK_ALPHA)),)))
        current = graph.add([current, "watermark"], "with_watermark", Filter("overlay", ("W/2-w/2", "H/2-h/2")))

    texts = []
    if show_date:
        for index, ts in enumerate(timestamps):
            texts.append(_drawtext(format_date(ts[:8]), "10", "10", font_file,
                                   enable=f"between(n,{index},{index})"))
    if caption and caption.strip():
        texts.append(_drawtext(caption.strip(), "(w-text_w)/2", "80" if show_date else "10", font_file))
    if texts:
        current = graph.add([current], "with_text", *texts)

    # a final pass-through keeps the mapped label stable whatever was enabled
    graph.add([current], "out", Filter("format", ("yuv420p",)))
    return graph


def clamp(value, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(low, min(high, number))


def effects_graph(contrast=1.0, brightness=0.0, saturation=1.0) -> FilterGraph:
    graph = FilterGraph()
    graph.add(["0:v"], "video", Filter("eq", options=(
        ("contrast", f"{clamp(contrast, 0.0, 3.0, 1.0):g}"),
        ("brightness", f"{clamp(brightness, -1.0, 1.0, 0.0):g}"),
        ("saturation", f"{clamp(saturation, 0.0, 3.0, 1.0):g}"),
    )))
    return graph
