# src/spanmacro/plugins/style.py
"""
CSS extraction at build time.

    css`padding: 15px;`          → "css-[start,end)" (rule appended to the sheet)
    injectGlobal`body { ... }`   → removed (rule appended to the sheet)
    colours.black                → code string configured in import_objects

The sheet lives on the StyleMacro instance; build one per run. hook_post writes
it to out_file.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, List, Mapping, Optional, Union

from ..engine.registry import MacroCall, MacroDefinition, RangeQuery, Span, SpecifierImpl
from ._literals import callee_range, member_chain_range, string_argument

IMPORT_SOURCE = "style.macro"

ImportObject = Mapping[str, Union[str, "ImportObject"]]


def compact_css(text: str) -> str:
    return re.sub(r"\s+", "", text)


class StyleMacro:
    def __init__(
        self,
        import_objects: Optional[ImportObject] = None,
        out_file: Union[str, Path, None] = "./out.css",
    ) -> None:
        self.import_objects: ImportObject = dict(import_objects or {})
        reserved = {"css", "injectGlobal"}.intersection(self.import_objects)
        if reserved:
            raise ValueError(f"Import objects cannot shadow {sorted(reserved)}")
        self.out_file = Path(out_file) if out_file is not None else None
        self.rules: List[str] = []

    @property
    def sheet(self) -> str:
        return "".join(self.rules)

    # ---- macro implementations ------------------------------------------------

    def css(self, call: MacroCall, expr: str) -> str:
        text = compact_css(string_argument(expr))
        self.rules.append(f"css: {text}\n")
        # Put back a string literal naming the rule
        return f'"css-{call.span}"'

    def inject_global(self, call: MacroCall, expr: str) -> str:
        text = compact_css(string_argument(expr))
        self.rules.append(f"injectGlobal: {text}\n")
        return ""

    def lookup(self, call: MacroCall, expr: str) -> str:
        path = [part.strip() for part in expr.split(".")]
        value: Any = self.import_objects.get(call.iden.specifier)
        walked = [call.iden.identifier]
        for key in path[1:]:
            walked.append(key)
            if not isinstance(value, Mapping) or key not in value:
                raise KeyError(f"{'.'.join(walked)} is not defined in import object {call.iden.specifier}")
            value = value[key]
        if not isinstance(value, str):
            raise TypeError(f"{'.'.join(walked)} is an object, access one of its keys: {sorted(value)}")
        return value

    # ---- ranges ---------------------------------------------------------------

    @staticmethod
    def _template_range(query: RangeQuery) -> Span:
        try:
            return callee_range(query, query.iden.specifier)
        except ValueError:
            raise ValueError(
                f"Macros css and injectGlobal must be called as tag template functions, not {query.parent}"
            ) from None

    # ---- hooks & definition ---------------------------------------------------

    def write_sheet(self, final_code: str) -> None:
        if self.out_file is None:
            return
        self.out_file.parent.mkdir(parents=True, exist_ok=True)
        self.out_file.write_text(self.sheet, encoding="utf-8")

    def definition(self) -> MacroDefinition:
        specifiers = {
            "css": SpecifierImpl(range_fn=self._template_range, replace_fn=self.css),
            "injectGlobal": SpecifierImpl(range_fn=self._template_range, replace_fn=self.inject_global),
        }
        for name in self.import_objects:
            specifiers[name] = SpecifierImpl(range_fn=member_chain_range, replace_fn=self.lookup)
        return MacroDefinition(import_source=IMPORT_SOURCE, import_specifiers=specifiers, hook_post=self.write_sheet)


def style_macro(
    import_objects: Optional[ImportObject] = None,
    out_file: Union[str, Path, None] = "./out.css",
) -> MacroDefinition:
    return StyleMacro(import_objects, out_file).definition()

