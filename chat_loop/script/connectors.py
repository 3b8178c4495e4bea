"""Data-source functions bound into the script scope.

Each factory receives a ConnectorContext and returns the callable injected
under its name, or None when the connector is unavailable for that context.
File and SQLite access is confined to the conversation's working directory.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional
from zipfile import BadZipFile

import httpx
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from pypdf import PdfReader
from pypdf.errors import PyPdfError
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from chat_loop.exceptions import ConnectorError

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = {
    ".txt", ".md", ".csv", ".tsv", ".json", ".jsonl", ".log", ".xml",
    ".yaml", ".yml", ".html", ".htm", ".sql", ".py", ".ini", ".toml",
}

DEFAULT_DATABASE = "workspace.db"


@dataclass
class ConnectorContext:
    working_dir: Path
    conversation_id: str
    project_id: str
    search_url: Optional[str] = None


ConnectorFactory = Callable[[ConnectorContext], Optional[Callable]]


def resolve_in_working_dir(working_dir: Path, path: str) -> Path:
    """Resolve ``path`` relative to ``working_dir``, refusing anything outside it."""
    root = working_dir.resolve()
    target = (root / path).resolve()
    if target != root and root not in target.parents:
        raise ConnectorError(f"Path '{path}' is outside the conversation files directory")
    return target


# ============================================================================
# Documents
# ============================================================================


def read_pdf(path: Path) -> str:
    """Extract the text of every page, pages separated by a blank line."""
    try:
        reader = PdfReader(str(path))
        pages = [(page.extract_text() or "").strip() for page in reader.pages]
    except PyPdfError as e:
        raise ConnectorError(f"Unable to read PDF '{path.name}': {e}") from e
    return "\n\n".join(p for p in pages if p)


def read_workbook(path: Path) -> str:
    """Render every sheet as a ``## <title>`` heading followed by CSV rows."""
    try:
        workbook = load_workbook(str(path), read_only=True, data_only=True)
    except (InvalidFileException, BadZipFile) as e:
        raise ConnectorError(f"Unable to read workbook '{path.name}': {e}") from e
    try:
        sections = []
        for sheet in workbook.worksheets:
            rows = [
                ",".join("" if value is None else str(value) for value in row)
                for row in sheet.iter_rows(values_only=True)
            ]
            sections.append("\n".join([f"## {sheet.title}", *rows]))
    finally:
        workbook.close()
    return "\n\n".join(sections)


DOCUMENT_READERS: dict[str, Callable[[Path], str]] = {
    ".pdf": read_pdf,
    ".xlsx": read_workbook,
    ".xlsm": read_workbook,
}


def create_read_document(ctx: ConnectorContext) -> Callable:
    async def read_document(
        path: str, max_chars: Optional[int] = None, encoding: str = "utf-8"
    ) -> dict:
        target = resolve_in_working_dir(ctx.working_dir, path)
        if not target.is_file():
            raise ConnectorError(f"File not found: {path}")

        suffix = target.suffix.lower()
        if suffix in DOCUMENT_READERS:
            content = await asyncio.to_thread(DOCUMENT_READERS[suffix], target)
        elif suffix in TEXT_SUFFIXES:
            content = await asyncio.to_thread(target.read_text, encoding, "replace")
        else:
            raise ConnectorError(f"Unsupported document type: {target.suffix or path}")

        truncated = max_chars is not None and len(content) > max_chars
        return {
            "path": path,
            "content": content[:max_chars] if truncated else content,
            "characters": len(content),
            "truncated": truncated,
        }

    return read_document


def create_list_files(ctx: ConnectorContext) -> Callable:
    async def list_files() -> list[dict]:
        def scan() -> list[dict]:
            if not ctx.working_dir.is_dir():
                return []
            return [
                {
                    "name": str(p.relative_to(ctx.working_dir)),
                    "size": p.stat().st_size,
                }
                for p in sorted(ctx.working_dir.rglob("*"))
                if p.is_file()
            ]

        return await asyncio.to_thread(scan)

    return list_files


# ============================================================================
# SQL
# ============================================================================


def _resolve_sql_url(ctx: ConnectorContext, url: Optional[str]):
    if url is None:
        database = resolve_in_working_dir(ctx.working_dir, DEFAULT_DATABASE)
        return make_url(f"sqlite:///{database}")

    try:
        parsed = make_url(url)
    except ArgumentError as e:
        raise ConnectorError(f"Invalid database URL: {e}") from e

    if parsed.get_backend_name() == "sqlite":
        database = parsed.database
        if database and database != ":memory:":
            resolved = resolve_in_working_dir(ctx.working_dir, database)
            parsed = parsed.set(database=str(resolved))
    return parsed


def _run_query(url, query: str, params: Optional[dict], limit: Optional[int]) -> dict:
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url)
    start = time.perf_counter()
    try:
        with engine.connect() as conn:
            result = conn.execute(text(query), params or {})
            if result.returns_rows:
                columns = list(result.keys())
                rows = result.fetchmany(limit) if limit else result.fetchall()
                data = [dict(row._mapping) for row in rows]
                row_count = len(data)
            else:
                conn.commit()
                columns, data, row_count = [], [], result.rowcount
    except SQLAlchemyError as e:
        raise ConnectorError(f"SQL query failed: {e}") from e
    finally:
        engine.dispose()

    return {
        "columns": columns,
        "data": data,
        "row_count": row_count,
        "execution_time_ms": round((time.perf_counter() - start) * 1000, 2),
    }


def create_sql_query(ctx: ConnectorContext) -> Callable:
    async def sql_query(
        query: str,
        url: Optional[str] = None,
        params: Optional[dict] = None,
        limit: Optional[int] = None,
    ) -> dict:
        engine_url = _resolve_sql_url(ctx, url)
        return await asyncio.to_thread(_run_query, engine_url, query, params, limit)

    return sql_query


# ============================================================================
# Web search
# ============================================================================


def create_web_search(ctx: ConnectorContext) -> Optional[Callable]:
    """SearxNG-compatible JSON search; unavailable without a search_url."""
    if not ctx.search_url:
        return None
    base_url = ctx.search_url.rstrip("/")

    async def web_search(query: str, max_results: int = 5) -> list[dict]:
        async with httpx.AsyncClient(timeout=20.0) as client:
            response = await client.get(
                f"{base_url}/search", params={"q": query, "format": "json"}
            )
        if response.status_code != 200:
            raise ConnectorError(
                f"Search failed with status {response.status_code}"
            )
        results = response.json().get("results") or []
        return [
            {
                "title": item.get("title", ""),
                "url": item.get("url", ""),
                "content": item.get("content", ""),
            }
            for item in results[:max_results]
        ]

    return web_search


DEFAULT_CONNECTORS: dict[str, ConnectorFactory] = {
    "read_document": create_read_document,
    "list_files": create_list_files,
    "sql_query": create_sql_query,
    "web_search": create_web_search,
}


def build_connectors(
    ctx: ConnectorContext,
    factories: Optional[dict[str, ConnectorFactory]] = None,
) -> dict[str, Any]:
    bindings = {}
    for name, factory in (factories if factories is not None else DEFAULT_CONNECTORS).items():
        binding = factory(ctx)
        if binding is not None:
            bindings[name] = binding
    return bindings
