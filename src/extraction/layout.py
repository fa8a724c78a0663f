"""Regroup positioned words into lines, cells and table rows."""
from dataclasses import dataclass, field
from statistics import median
from typing import List, Optional, Sequence

from preprocessor.text_layer import TextItem


@dataclass
class PageLine:
    y: float
    items: List[TextItem]
    text: str
    page: int


@dataclass
class Cell:
    text: str
    x0: float
    x1: float

    @property
    def center(self) -> float:
        return (self.x0 + self.x1) / 2


@dataclass
class TableRow:
    cells: List[Cell]
    row_text: str
    y: float
    page: int


@dataclass
class BBox:
    x0: float
    y0: float
    x1: float
    y1: float


@dataclass
class TableRegion:
    header_row: TableRow
    data_rows: List[TableRow] = field(default_factory=list)
    page: int = 0
    bbox: Optional[BBox] = None


def compute_y_tolerance(items: Sequence[TextItem]) -> float:
    heights = [i.height for i in items if i.height > 0]
    return max(2.0, median(heights) * 0.6) if heights else 2.0


def compute_x_gap_tolerance(items: Sequence[TextItem]) -> float:
    char_widths = [i.width / len(i.text) for i in items if i.text and i.width > 0]
    return max(10.0, median(char_widths) * 2.2) if char_widths else 10.0


def _build_line(items: List[TextItem], y: float, page: int) -> PageLine:
    items = sorted(items, key=lambda i: i.x)
    parts = []
    for idx, item in enumerate(items):
        if idx > 0:
            prev = items[idx - 1]
            if item.x - (prev.x + prev.width) > 1:
                parts.append(" ")
        parts.append(item.text)
    text = " ".join("".join(parts).split())
    return PageLine(y=y, items=items, text=text, page=page)


def cluster_by_y(items: Sequence[TextItem], page: int, y_tol: Optional[float] = None) -> List[PageLine]:
    """Group items into lines by vertical proximity, top to bottom."""
    if not items:
        return []

    tol = y_tol if y_tol is not None else compute_y_tolerance(items)
    ordered = sorted(items, key=lambda i: (i.y, i.x))

    lines = []
    current = [ordered[0]]
    current_y = ordered[0].y
    for item in ordered[1:]:
        if abs(item.y - current_y) <= tol:
            current.append(item)
        else:
            lines.append(_build_line(current, current_y, page))
            current = [item]
            current_y = item.y
    lines.append(_build_line(current, current_y, page))
    return lines


def cluster_by_x(line_items: Sequence[TextItem], x_gap_tol: Optional[float] = None) -> List[Cell]:
    """Split a line's items into cells wherever the horizontal gap exceeds the tolerance."""
    if not line_items:
        return []

    tol = x_gap_tol if x_gap_tol is not None else compute_x_gap_tolerance(line_items)
    cells = []
    current = [line_items[0]]
    for item in line_items[1:]:
        prev = current[-1]
        if item.x - (prev.x + prev.width) > tol:
            cells.append(_build_cell(current))
            current = [item]
        else:
            current.append(item)
    cells.append(_build_cell(current))
    return cells


def _build_cell(items: List[TextItem]) -> Cell:
    text = " ".join(" ".join(i.text for i in items).split())
    return Cell(text=text, x0=items[0].x, x1=items[-1].x + items[-1].width)


def lines_to_table_rows(lines: Sequence[PageLine], x_gap_tol: Optional[float] = None) -> List[TableRow]:
    return [
        TableRow(cells=cluster_by_x(line.items, x_gap_tol), row_text=line.text, y=line.y, page=line.page)
        for line in lines
    ]


def build_rows(items: Sequence[TextItem], page: int) -> List[TableRow]:
    """Cluster a page's items into table rows using page-level tolerances."""
    if not items:
        return []
    lines = cluster_by_y(items, page, compute_y_tolerance(items))
    return lines_to_table_rows(lines, compute_x_gap_tolerance(items))
