# src/spanmacro/engine/bindings.py
from __future__ import annotations

import re
from typing import Dict, List, Optional

from .anomalies import Anomaly, AnomalyKind, AnomalySink, Severity
from .registry import MacroError, MacroIden, MacroRegistry, Span
from .walker import WalkEvent


class BindingTable:
    """
    Two-way map between local identifiers and the macro (source, specifier) they
    were imported as, plus the import prologue (accepted import declarations,
    deleted from the output).

      "style.macro" → {"css": ["css", "c2"]}
      "c2"          → MacroIden("c2", "style.macro", "css")
    """

    def __init__(
        self,
        registry: MacroRegistry,
        import_source_pattern: str,
        *,
        sink: Optional[AnomalySink] = None,
        path: str = "",
    ) -> None:
        self._registry = registry
        self._pattern = re.compile(import_source_pattern)
        self._sink = sink
        self._path = path
        self._by_source: Dict[str, Dict[str, List[str]]] = {}
        self._by_local: Dict[str, MacroIden] = {}
        self._prologue: List[Span] = []
        self._seen_identifier = False
        # Statement ranges that also import something left in the output
        self._kept: Dict[Span, str] = {}
        self._accepted: Dict[Span, str] = {}

    # ---- walk callbacks -------------------------------------------------------

    def accept_import(self, event: WalkEvent) -> bool:
        """
        Register the bindings of one import declaration.
        Returns True when the declaration belongs to a registered macro (and joins the prologue).
        """
        source = event.name
        span = Span(event.start, event.end)
        # Only macro imports are ordered: Python allows imports anywhere
        if not self._pattern.search(source):
            self._reject(span, source)
            return False

        if self._seen_identifier:
            raise MacroError(
                code="IMPORT_AFTER_IDENTIFIER",
                message="Import statement found after an identifier",
                span=span,
                detail=f"source={source!r}",
            )

        if source not in self._registry:
            self._reject(span, source)
            if self._sink is not None:
                self._sink.emit(
                    Anomaly(
                        path=self._path,
                        kind=AnomalyKind.MACRO_SKIPPED,
                        severity=Severity.INFO,
                        detail=f'Skipping unknown macro "{source}"',
                        span=(event.start, event.end),
                    )
                )
            return False

        if span in self._kept:
            raise _mixed(span, self._kept[span], source)

        known = self._registry.specifiers(source)
        for spec in event.specifiers:
            if spec.imported not in known:
                raise MacroError(
                    code="UNKNOWN_SPECIFIER",
                    message=f"Import specifier {spec.imported} is not part of {source}",
                    source=source,
                    specifier=spec.imported,
                    span=Span(event.start, event.end),
                )

        for spec in event.specifiers:
            existing = self._by_local.get(spec.local)
            if existing is not None:
                if existing.source == source and existing.specifier == spec.imported:
                    continue
                raise MacroError(
                    code="REBOUND_IDENTIFIER",
                    message=(
                        f"Identifier {spec.local} is already bound to {existing.label}; "
                        f"cannot rebind it to {source}:{spec.imported}"
                    ),
                    source=source,
                    specifier=spec.imported,
                    span=Span(event.start, event.end),
                )
            self._by_source.setdefault(source, {}).setdefault(spec.imported, []).append(spec.local)
            self._by_local[spec.local] = MacroIden(identifier=spec.local, source=source, specifier=spec.imported)

        # `import a.macro, b.macro` reports one statement range per module
        if not self._prologue or self._prologue[-1] != span:
            self._prologue.append(span)
        self._accepted.setdefault(span, source)
        return True

    def _reject(self, span: Span, source: str) -> None:
        if span in self._accepted:
            raise _mixed(span, source, self._accepted[span])
        self._kept.setdefault(span, source)

    def note_identifier(self) -> None:
        self._seen_identifier = True

    # ---- lookups --------------------------------------------------------------

    def lookup(self, local: str) -> Optional[MacroIden]:
        return self._by_local.get(local)

    def locals_for(self, source: str, specifier: str) -> List[str]:
        return list(self._by_source.get(source, {}).get(specifier, []))

    @property
    def prologue(self) -> List[Span]:
        return list(self._prologue)

    @property
    def prologue_end(self) -> int:
        return max((s.end for s in self._prologue), default=0)

    def __len__(self) -> int:
        return len(self._by_local)


def _mixed(span: Span, kept: str, macro: str) -> MacroError:
    return MacroError(
        code="MIXED_IMPORT",
        message=f"Import statement at {span} mixes macro and non-macro modules; import {kept!r} separately",
        span=span,
        detail=f"kept={kept!r} macro={macro!r}",
    )
