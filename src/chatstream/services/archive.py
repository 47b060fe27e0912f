"""Prompt-safe text summary of a ZIP attachment.

Lists the entries and extracts capped snippets from text-like members.
Members are read through a byte cap so a compressed bomb cannot inflate
past ``max_per_file_bytes``.
"""

from __future__ import annotations

import io
import zipfile
from dataclasses import dataclass, field
from typing import List

TEXT_EXTENSIONS = frozenset(
    {
        "txt", "md", "markdown", "json", "js", "jsx", "ts", "tsx", "css", "html", "htm",
        "yml", "yaml", "csv", "tsv", "xml", "env", "py", "java", "go", "rs", "php", "rb",
        "c", "cc", "cpp", "h", "hpp", "sh", "bat", "ps1", "sql", "toml", "ini", "properties",
    }
)

MAX_ENTRIES = 2000
MAX_FILES_TO_EXTRACT = 30
MAX_PER_FILE_BYTES = 40_000
MAX_TOTAL_UNCOMPRESSED = 200 * 1024 * 1024
MAX_LISTED = 500


@dataclass
class ArchiveSummary:
    text: str
    warnings: List[str] = field(default_factory=list)


def _is_text_like(name: str) -> bool:
    base = name.rsplit("/", 1)[-1].lower()
    if base == "dockerfile" or base.endswith(".gitignore"):
        return True
    if "." not in base:
        return False
    return base.rsplit(".", 1)[-1] in TEXT_EXTENSIONS


def summarize_zip(data: bytes, max_chars: int = 120_000) -> ArchiveSummary:
    if not data:
        return ArchiveSummary(text="ZIP: (no bytes)", warnings=["missing_bytes"])
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, ValueError) as exc:
        return ArchiveSummary(text=f"ZIP parse failed: {exc}", warnings=["zip_parse_failed"])

    warnings: List[str] = []
    with archive:
        infos = archive.infolist()
        if len(infos) > MAX_ENTRIES:
            warnings.append(f"too_many_entries_over_{MAX_ENTRIES}")
            infos = infos[:MAX_ENTRIES]

        entries: List[zipfile.ZipInfo] = []
        total = 0
        for info in infos:
            total += info.file_size
            entries.append(info)
            if total > MAX_TOTAL_UNCOMPRESSED:
                warnings.append("uncompressed_limit")
                break

        remaining = max(0, int(max_chars))
        snippets = []
        for info in entries:
            if len(snippets) >= MAX_FILES_TO_EXTRACT or remaining <= 0:
                break
            name = info.filename.replace("\\", "/").lstrip("/")
            if info.is_dir() or not _is_text_like(name):
                continue
            if info.file_size > MAX_PER_FILE_BYTES * 4:
                continue
            try:
                with archive.open(info) as fh:
                    raw = fh.read(MAX_PER_FILE_BYTES)
            except (zipfile.BadZipFile, NotImplementedError, RuntimeError, OSError):
                warnings.append("zip_extract_error")
                continue
            text = raw.decode("utf-8", errors="replace").replace("\x00", "")
            truncated = len(text) > remaining
            if truncated:
                text = text[:remaining]
            remaining -= len(text)
            snippets.append((name, text, truncated))

    lines = ["ZIP SUMMARY", f"entries: {len(entries)}"]
    if warnings:
        lines.append(f"warnings: {', '.join(warnings)}")
    lines += ["", "FILE LIST:"]
    for info in entries[:MAX_LISTED]:
        lines.append(f"- {info.filename} ({info.file_size} bytes)")
    if len(entries) > MAX_LISTED:
        lines.append(f"- (and {len(entries) - MAX_LISTED} more)")
    if snippets:
        lines += ["", "EXTRACTED SNIPPETS (text-like files):"]
        for name, text, truncated in snippets:
            lines += ["", f"FILE: {name}", "```", text, "```"]
            if truncated:
                lines.append("[snippet truncated by context limit]")
    return ArchiveSummary(text="\n".join(lines), warnings=warnings)
