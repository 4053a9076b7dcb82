"""
Asset ledger: pending uploads and their alt text.

Slots are addressed by (section_key, index). index is the sub-section
position for per-sub-section slots and None for section-level or top-level
upload slots. Each slot holds an ordered list of entries; single-image slots
only ever use position 0.

Alt text is edited independently of the file: it can be typed before a file
is chosen, and replacing the file keeps it.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from werkzeug.datastructures import FileStorage


ALT_TEXT_MAX_LENGTH = 255

SlotKey = Tuple[str, Optional[int]]


@dataclass
class AssetEntry:
    """One upload position: the pending file, its alt text and a preview handle."""
    binary: Optional[FileStorage] = None
    alt_text: str = ''
    preview: Any = None

    @property
    def has_binary(self) -> bool:
        return self.binary is not None

    def describe(self) -> Dict[str, Any]:
        """Summary for the rendering layer (the file itself is never serialised)."""
        return {
            'filename': self.binary.filename if self.binary is not None else None,
            'content_type': self.binary.content_type if self.binary is not None else None,
            'alt_text': self.alt_text,
            'preview': self.preview,
        }


def cap_alt_text(text: Optional[str]) -> str:
    if not text:
        return ''
    return text[:ALT_TEXT_MAX_LENGTH]


class AssetLedger:
    """Pending uploads for one edit session."""

    def __init__(self):
        self._slots: Dict[SlotKey, List[AssetEntry]] = {}

    def set_asset(self, section_key: str, index: Optional[int], file: FileStorage,
                  preview: Any = None, position: int = 0) -> AssetEntry:
        """
        Put a file at a position, replacing any file already there.

        The entry's alt text is kept. Position may be at most one past the
        current end of the slot.
        """
        entries = self._slots.get((section_key, index), [])
        if position < 0 or position > len(entries):
            raise IndexError(f'No asset position {position} in {section_key}[{index}]')
        self._slots[(section_key, index)] = entries
        if position == len(entries):
            entries.append(AssetEntry())
        entry = entries[position]
        entry.binary = file
        entry.preview = preview
        return entry

    def add_asset(self, section_key: str, index: Optional[int], file: FileStorage,
                  preview: Any = None) -> int:
        """
        Add a file to a multi-image slot; returns its position.

        The first position holding only alt text takes the file, so alt text
        typed ahead of the upload stays with it. Otherwise the file is appended.
        """
        entries = self._slots.setdefault((section_key, index), [])
        for position, entry in enumerate(entries):
            if not entry.has_binary:
                entry.binary = file
                entry.preview = preview
                return position
        entries.append(AssetEntry(binary=file, preview=preview))
        return len(entries) - 1

    def remove_asset(self, section_key: str, index: Optional[int], position: int = 0) -> None:
        """Remove one entry (file and alt text); later positions move up."""
        key = (section_key, index)
        entries = self._slots.get(key)
        if not entries or not 0 <= position < len(entries):
            raise IndexError(f'No asset position {position} in {section_key}[{index}]')
        del entries[position]
        if not entries:
            del self._slots[key]

    def set_alt_text(self, section_key: str, index: Optional[int], text: str,
                     position: int = 0) -> str:
        """
        Set alt text, creating an empty entry if the position has none yet.

        Returns:
            The stored text, capped at ALT_TEXT_MAX_LENGTH characters
        """
        entries = self._slots.get((section_key, index), [])
        if position < 0 or position > len(entries):
            raise IndexError(f'No asset position {position} in {section_key}[{index}]')
        self._slots[(section_key, index)] = entries
        if position == len(entries):
            entries.append(AssetEntry())
        entries[position].alt_text = cap_alt_text(text)
        return entries[position].alt_text

    def clear_alt_text(self, section_key: str, index: Optional[int], position: int = 0) -> None:
        entry = self.get_asset(section_key, index, position)
        if entry is not None:
            entry.alt_text = ''

    def get_asset(self, section_key: str, index: Optional[int], position: int = 0) -> Optional[AssetEntry]:
        entries = self._slots.get((section_key, index), [])
        if 0 <= position < len(entries):
            return entries[position]
        return None

    def get_assets(self, section_key: str, index: Optional[int]) -> List[AssetEntry]:
        return list(self._slots.get((section_key, index), []))

    def count(self, section_key: str, index: Optional[int]) -> int:
        """Number of entries in a slot that hold a file."""
        return sum(1 for entry in self._slots.get((section_key, index), []) if entry.has_binary)

    def indices(self, section_key: str) -> List[int]:
        """Sub-section indices of a section that have a slot, ascending."""
        return sorted(index for key, index in self._slots if key == section_key and index is not None)

    def reindex_after_removal(self, section_key: str, removed_index: int) -> None:
        """
        Follow the removal of sub-section `removed_index`.

        The slot at the removed index is dropped, slots above it move down
        by one, slots below it are untouched.
        """
        self._slots.pop((section_key, removed_index), None)
        for index in self.indices(section_key):
            if index > removed_index:
                self._slots[(section_key, index - 1)] = self._slots.pop((section_key, index))

    def slots(self) -> Iterator[Tuple[SlotKey, List[AssetEntry]]]:
        for key, entries in self._slots.items():
            yield key, list(entries)

    def clear(self) -> None:
        self._slots.clear()

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        """Slot summaries keyed 'section' or 'section.index'."""
        summary = {}
        for (section_key, index), entries in self._slots.items():
            label = section_key if index is None else f'{section_key}.{index}'
            summary[label] = [entry.describe() for entry in entries]
        return summary

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._slots.values())
