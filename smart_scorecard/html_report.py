"""Minimal HTML diagnostics pages."""

from html import escape
from typing import Any, Mapping, Optional, Sequence


class HtmlReport:
    """Accumulates an HTML page of titled key/value tables.

    Usage::

        body = HtmlReport().open().echo_hash("params", params).close()
    """

    def __init__(self, title: str = "SMART Scorecard") -> None:
        self.title = title
        self._parts = []

    def open(self) -> "HtmlReport":
        self._parts = [
            "<!DOCTYPE html>",
            "<html>",
            f"<head><meta charset='utf-8'><title>{escape(self.title)}</title></head>",
            "<body>",
        ]
        return self

    def echo_hash(self, title: str, mapping: Optional[Mapping[str, Any]], headers: Optional[Sequence[str]] = None) -> "HtmlReport":
        """Render ``mapping`` as a table under an ``<h2>`` heading.

        With ``headers``, each value must itself be a mapping and is expanded
        into one column per remaining header, e.g. scorecard rows rendered as
        ``rubric | points | description``.
        """
        self._parts.append(f"<h2>{escape(title)}</h2>")
        self._parts.append("<table border='1'>")
        if headers:
            self._parts.append("<tr>" + "".join(f"<th>{escape(h)}</th>" for h in headers) + "</tr>")
        for key, value in (mapping or {}).items():
            if headers and isinstance(value, Mapping):
                cells = [key] + list(value.values())[:len(headers) - 1]
            else:
                cells = [key, value]
            self._parts.append("<tr>" + "".join(f"<td>{escape(str(c))}</td>" for c in cells) + "</tr>")
        self._parts.append("</table>")
        return self

    def close(self) -> str:
        self._parts.extend(["</body>", "</html>"])
        return "\n".join(self._parts)
