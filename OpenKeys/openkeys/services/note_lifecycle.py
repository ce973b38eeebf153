from __future__ import annotations

from typing import Callable, Iterable

from openkeys.core.config import NOTE_SOURCES, NoteSource

ReleaseCallback = Callable[[str], None]


class NoteActivationTracker:

    def __init__(self) -> None:
        self._sources: dict[NoteSource, set[str]] = {source: set() for source in NOTE_SOURCES}
        self._highlighted: set[str] = set()

    def _source_set(self, source: str) -> set[str]:
        try:
            return self._sources[source]  # type: ignore[index]
        except KeyError:
            raise ValueError(f"Unknown note source: {source!r}") from None

    def activate(self, note: str, source: NoteSource = "program") -> bool:
        if not note:
            return False
        notes = self._source_set(source)
        if note in notes:
            return False
        notes.add(note)
        return True

    def deactivate(self, note: str, source: NoteSource = "program") -> bool:
        if not note:
            return False
        notes = self._source_set(source)
        if note not in notes:
            return False
        notes.discard(note)
        return True

    def is_active(self, note: str) -> bool:
        return any(note in notes for notes in self._sources.values())

    def holds(self, note: str, source: NoteSource) -> bool:
        return note in self._source_set(source)

    def active_notes(self) -> set[str]:
        union: set[str] = set()
        for notes in self._sources.values():
            union |= notes
        return union

    def notes_for(self, source: NoteSource) -> frozenset[str]:
        return frozenset(self._source_set(source))

    def sources_for(self, note: str) -> set[NoteSource]:
        return {source for source, notes in self._sources.items() if note in notes}

    def clear_source(self, source: NoteSource = "program") -> set[str]:
        notes = self._source_set(source)
        cleared = set(notes)
        notes.clear()
        return cleared

    def clear_all(self) -> set[str]:
        cleared = self.active_notes()
        for notes in self._sources.values():
            notes.clear()
        return cleared

    def highlight(self, note: str) -> None:
        if note:
            self._highlighted.add(note)

    def unhighlight(self, note: str) -> None:
        self._highlighted.discard(note)

    def set_highlights(self, notes: Iterable[str]) -> None:
        self._highlighted = {note for note in notes if note}

    def clear_highlights(self) -> None:
        self._highlighted.clear()

    def is_highlighted(self, note: str) -> bool:
        return note in self._highlighted

    def highlighted_notes(self) -> set[str]:
        return set(self._highlighted)


class SustainController:
    """Pedal-aware release on top of a :class:`NoteActivationTracker`.

    A note stops sounding when no source holds it and the pedal is up. Notes
    let go while the pedal is down are kept in ``pending`` and released on
    pedal-up unless some source has picked them up again in the meantime.
    """

    def __init__(self, tracker: NoteActivationTracker, on_release: ReleaseCallback | None = None) -> None:
        self.tracker = tracker
        self._on_release = on_release
        self._engaged = False
        self._pending: set[str] = set()

    @property
    def engaged(self) -> bool:
        return self._engaged

    @property
    def pending(self) -> frozenset[str]:
        return frozenset(self._pending)

    def press(self, note: str, source: NoteSource) -> bool:
        was_sounding = self.is_sounding(note)
        self.tracker.activate(note, source)
        self._pending.discard(note)
        return not was_sounding

    def release(self, note: str, source: NoteSource) -> bool:
        if not self.tracker.deactivate(note, source):
            return False
        if self.tracker.is_active(note):
            return False
        if self._engaged:
            self._pending.add(note)
            return False
        self._emit_release(note)
        return True

    def set_engaged(self, engaged: bool) -> list[str]:
        flag = bool(engaged)
        if flag == self._engaged:
            return []
        self._engaged = flag
        if flag:
            return []
        released: list[str] = []
        pending = self._pending
        self._pending = set()
        for note in sorted(pending):
            if self.tracker.is_active(note):
                continue
            self._emit_release(note)
            released.append(note)
        return released

    def release_source(self, source: NoteSource) -> list[str]:
        released: list[str] = []
        for note in sorted(self.tracker.notes_for(source)):
            if self.release(note, source):
                released.append(note)
        return released

    def release_all(self) -> list[str]:
        notes = sorted(self.sounding_notes())
        self.tracker.clear_all()
        self._pending.clear()
        for note in notes:
            self._emit_release(note)
        return notes

    def sounding_notes(self) -> set[str]:
        return self.tracker.active_notes() | self._pending

    def is_sounding(self, note: str) -> bool:
        return note in self._pending or self.tracker.is_active(note)

    def _emit_release(self, note: str) -> None:
        if self._on_release is not None:
            self._on_release(note)
