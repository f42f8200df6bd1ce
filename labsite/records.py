"""Laboratory content tables and their create/update/delete operations.

Each editable table is described once by an ``Entity``. Form cleaning, file
uploads, ordering and ownership lookups are driven by that description, so
the admin routes stay identical for every record type.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from labsite import uploads
from labsite.helpers import is_checked, iso, parse_date, to_int

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PROJECT_STATUSES = [("planned", "Planificat"), ("active", "În derulare"), ("completed", "Finalizat")]
FILE_FIELD_SUFFIX = "_file"
# Records removed by ON DELETE CASCADE when their parent goes.
CHILD_ENTITIES = {"labs": ("groups", "publications", "projects", "infrastructure"), "groups": ("members", "results")}


class RecordValidationError(ValueError):
    """Raised when submitted form data is rejected; the message is user-facing."""


@dataclass(frozen=True)
class Field:
    name: str
    label: str
    kind: str = "text"
    required: bool = False
    super_only: bool = False


@dataclass(frozen=True)
class Entity:
    key: str
    table: str
    label: str
    fields: Tuple[Field, ...]
    title_field: str
    parent: Optional[str] = "lab_id"
    order_by: str = "display_order, id"
    bucket: str = "lab-uploads"

    def field(self, name: str) -> Optional[Field]:
        return next((f for f in self.fields if f.name == name), None)

    @property
    def file_fields(self) -> List[Field]:
        return [f for f in self.fields if f.kind in {"image", "document"}]


ENTITIES: Dict[str, Entity] = {
    "labs": Entity(
        key="labs",
        table="laboratories",
        label="Laborator",
        parent=None,
        title_field="name",
        order_by="display_order, name",
        fields=(
            Field("name", "Nume laborator", required=True),
            Field("short_name", "Nume scurt"),
            Field("head_name", "Șef laborator", required=True),
            Field("head_email", "Email șef", "email"),
            Field("description", "Descriere", "textarea"),
            Field("contact_email", "Email contact", "email"),
            Field("contact_phone", "Telefon"),
            Field("address", "Adresă"),
            Field("logo_url", "Logo", "image"),
            Field("banner_url", "Banner", "image"),
            Field("explore_url", "Link extern (Explorează)", "url", super_only=True),
            Field("display_order", "Ordine afișare", "int", super_only=True),
            Field("is_active", "Activ", "bool", super_only=True),
        ),
    ),
    "groups": Entity(
        key="groups",
        table="research_groups",
        label="Grup de cercetare",
        title_field="name",
        bucket="research-groups",
        fields=(
            Field("name", "Nume grup", required=True),
            Field("leader_name", "Lider"),
            Field("leader_email", "Email lider", "email"),
            Field("description", "Descriere", "textarea"),
            Field("topics", "Teme de cercetare", "textarea"),
            Field("members", "Membri (câte unul pe linie)", "lines"),
        ),
    ),
    "members": Entity(
        key="members",
        table="group_members",
        label="Membru",
        parent="group_id",
        title_field="name",
        bucket="research-groups",
        fields=(
            Field("name", "Nume", required=True),
            Field("position", "Funcție"),
            Field("email", "Email", "email"),
            Field("description", "Descriere", "textarea"),
            Field("photo_url", "Fotografie", "image"),
            Field("cv_url", "CV (PDF)", "document"),
        ),
    ),
    "results": Entity(
        key="results",
        table="group_results",
        label="Rezultat",
        parent="group_id",
        title_field="title",
        bucket="research-groups",
        fields=(
            Field("title", "Titlu"),
            Field("content", "Conținut", "textarea"),
            Field("image_url", "Imagine", "image"),
        ),
    ),
    "publications": Entity(
        key="publications",
        table="publication_entries",
        label="Publicație",
        title_field="content",
        order_by="year DESC, display_order, id",
        fields=(
            Field("year", "An", "year", required=True),
            Field("content", "Publicație", "textarea", required=True),
        ),
    ),
    "projects": Entity(
        key="projects",
        table="projects",
        label="Proiect",
        title_field="title",
        fields=(
            Field("title", "Titlu", required=True),
            Field("project_code", "Cod proiect"),
            Field("director_name", "Director"),
            Field("funding_source", "Sursa de finanțare"),
            Field("budget", "Buget"),
            Field("start_date", "Data început", "date"),
            Field("end_date", "Data sfârșit", "date"),
            Field("status", "Stare", "status"),
            Field("url", "Link", "url"),
            Field("description", "Descriere", "textarea"),
        ),
    ),
    "infrastructure": Entity(
        key="infrastructure",
        table="infrastructure",
        label="Echipament",
        title_field="name",
        fields=(
            Field("name", "Denumire", required=True),
            Field("description", "Descriere", "textarea"),
            Field("specifications", "Specificații", "textarea"),
            Field("responsible_name", "Responsabil"),
            Field("responsible_email", "Email responsabil", "email"),
            Field("external_link", "Link extern", "url"),
            Field("image_url", "Imagine", "image"),
            Field("document_url", "Document", "document"),
        ),
    ),
}


def entity_for(key: str) -> Entity:
    entity = ENTITIES.get(key)
    if entity is None:
        raise KeyError(f"unknown record type: {key}")
    return entity


def _clean_url(value: str, label: str) -> Optional[str]:
    if not value:
        return None
    if value.lower().startswith("www."):
        value = f"https://{value}"
    if not (value.lower().startswith(("http://", "https://")) or value.startswith(uploads.PUBLIC_PREFIX)):
        raise RecordValidationError(f"{label}: linkul trebuie să înceapă cu http:// sau https://")
    return value


def clean_field(fld: Field, raw: Optional[str]):
    """Convert one submitted value to its stored form."""
    if fld.kind == "bool":
        return 1 if is_checked(raw) else 0
    value = str(raw or "").strip()
    if fld.required and not value:
        raise RecordValidationError(f"{fld.label} este obligatoriu.")
    if fld.kind == "email":
        if value and not EMAIL_RE.match(value):
            raise RecordValidationError(f"{fld.label}: adresa de email nu este validă.")
        return value.lower() or None
    if fld.kind in {"url", "image", "document"}:
        return _clean_url(value, fld.label)
    if fld.kind == "int":
        if not value:
            return 0
        number = to_int(value)
        if number is None:
            raise RecordValidationError(f"{fld.label} trebuie să fie un număr.")
        return number
    if fld.kind == "year":
        year = to_int(value)
        if year is None or not 1900 <= year <= dt.date.today().year + 1:
            raise RecordValidationError(f"{fld.label}: an invalid.")
        return year
    if fld.kind == "date":
        if not value:
            return None
        parsed = parse_date(value)
        if parsed is None:
            raise RecordValidationError(f"{fld.label}: dată invalidă.")
        return parsed
    if fld.kind == "status":
        allowed = {key for key, _ in PROJECT_STATUSES}
        return value if value in allowed else "active"
    if fld.kind == "lines":
        lines = [line.strip() for line in value.splitlines() if line.strip()]
        return "\n".join(lines) or None
    return value or None


def clean_form(entity: Entity, form: Mapping[str, str], include_super_fields: bool) -> Dict[str, object]:
    values: Dict[str, object] = {}
    for fld in entity.fields:
        if fld.super_only and not include_super_fields:
            continue
        values[fld.name] = clean_field(fld, form.get(fld.name))
    return values


def apply_uploads(
    conn,
    entity: Entity,
    values: Dict[str, object],
    files: Mapping[str, object],
    lab_id: Optional[int],
    user_id: Optional[int],
) -> List[str]:
    """Store uploaded files and point their URL fields at them.

    Returns the public URLs written. If a later file is rejected, the ones
    already written by this call are removed before the error propagates.
    """
    written: List[str] = []
    try:
        for fld in entity.file_fields:
            upload = files.get(fld.name + FILE_FIELD_SUFFIX)
            if upload is None or not getattr(upload, "filename", ""):
                continue
            rule = uploads.IMAGE_RULE if fld.kind == "image" else uploads.DOCUMENT_RULE
            folder = f"{entity.key}/{lab_id}" if lab_id else entity.key
            url = uploads.store_upload(conn, upload, entity.bucket, folder, rule, lab_id=lab_id, uploaded_by=user_id)
            written.append(url)
            values[fld.name] = url
    except uploads.UploadError:
        uploads.discard_files(written)
        raise
    return written


def record_uploads(entity: Entity, record: Optional[Mapping[str, object]]) -> List[Tuple[str, str]]:
    """(url, bucket) pairs for the stored files a record points at."""
    found = []
    for fld in entity.file_fields:
        url = str((record or {}).get(fld.name) or "")
        if url.startswith(uploads.PUBLIC_PREFIX):
            found.append((url, entity.bucket))
    return found


def replaced_uploads(entity: Entity, values: Mapping[str, object], previous: Optional[Mapping[str, object]]) -> List[Tuple[str, str]]:
    """Stored files of ``previous`` that ``values`` replaces or clears."""
    stale = []
    for fld in entity.file_fields:
        old_url = str((previous or {}).get(fld.name) or "")
        if fld.name in values and old_url.startswith(uploads.PUBLIC_PREFIX) and values[fld.name] != old_url:
            stale.append((old_url, entity.bucket))
    return stale


def owned_uploads(conn, key: str, record: Mapping[str, object]) -> List[Tuple[str, str]]:
    """Stored files of a record and of every child record deleted with it."""
    found = record_uploads(entity_for(key), record)
    for child in CHILD_ENTITIES.get(key, ()):
        for row in list_records(conn, child, int(record["id"])):
            found.extend(owned_uploads(conn, child, row))
    return found


def purge_uploads(conn, stale: Iterable[Tuple[str, str]]) -> None:
    """Delete files that a committed change no longer references."""
    for url, bucket in stale:
        uploads.delete_upload(conn, url, bucket)
    conn.commit()


def list_records(conn, key: str, parent_id: int) -> List[Dict[str, object]]:
    entity = entity_for(key)
    rows = conn.execute(
        f"SELECT * FROM {entity.table} WHERE {entity.parent} = ? ORDER BY {entity.order_by}",
        (parent_id,),
    ).fetchall()
    return [dict(row) for row in rows]


def get_record(conn, key: str, record_id: Optional[int]) -> Optional[Dict[str, object]]:
    if record_id is None:
        return None
    entity = entity_for(key)
    row = conn.execute(f"SELECT * FROM {entity.table} WHERE id = ?", (record_id,)).fetchone()
    return dict(row) if row else None


def next_display_order(conn, entity: Entity, parent_id: Optional[int], scope: Optional[Mapping[str, object]] = None) -> int:
    clauses = []
    params: List[object] = []
    if entity.parent:
        clauses.append(f"{entity.parent} = ?")
        params.append(parent_id)
    for column, value in (scope or {}).items():
        clauses.append(f"{column} = ?")
        params.append(value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    row = conn.execute(f"SELECT COUNT(*) AS c FROM {entity.table} {where}", tuple(params)).fetchone()
    return int(row["c"]) if row else 0


def create_record(conn, key: str, parent_id: Optional[int], values: Mapping[str, object]) -> int:
    entity = entity_for(key)
    data = dict(values)
    if entity.parent:
        data[entity.parent] = parent_id
    if "display_order" not in data:
        # Publications are ordered inside their year.
        scope = {"year": data["year"]} if key == "publications" else None
        data["display_order"] = next_display_order(conn, entity, parent_id, scope)
    now = iso()
    data["created_at"] = now
    data["updated_at"] = now
    columns = list(data.keys())
    placeholders = ", ".join("?" for _ in columns)
    row = conn.execute(
        f"INSERT INTO {entity.table} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING id",
        tuple(data[c] for c in columns),
    ).fetchone()
    logger.info("Created %s #%s", entity.table, row["id"])
    return int(row["id"])


def update_record(conn, key: str, record_id: int, values: Mapping[str, object]) -> None:
    entity = entity_for(key)
    data = dict(values)
    data["updated_at"] = iso()
    assignments = ", ".join(f"{column} = ?" for column in data)
    conn.execute(
        f"UPDATE {entity.table} SET {assignments} WHERE id = ?",
        tuple(data.values()) + (record_id,),
    )


def delete_record(conn, key: str, record_id: int) -> bool:
    entity = entity_for(key)
    current = get_record(conn, key, record_id)
    if current is None:
        return False
    conn.execute(f"DELETE FROM {entity.table} WHERE id = ?", (record_id,))
    logger.info("Deleted %s #%s", entity.table, record_id)
    return True


def lab_id_for_parent(conn, key: str, parent_id: Optional[int]) -> Optional[int]:
    """Lab that owns records of ``key`` attached to ``parent_id``."""
    entity = entity_for(key)
    if parent_id is None:
        return None
    if entity.parent == "group_id":
        row = conn.execute("SELECT lab_id FROM research_groups WHERE id = ?", (parent_id,)).fetchone()
        return int(row["lab_id"]) if row else None
    row = conn.execute("SELECT id FROM laboratories WHERE id = ?", (parent_id,)).fetchone()
    return int(row["id"]) if row else None


def lab_id_for_record(conn, key: str, record: Mapping[str, object]) -> Optional[int]:
    entity = entity_for(key)
    if entity.parent is None:
        return int(record["id"])
    return lab_id_for_parent(conn, key, to_int(record.get(entity.parent)))


def list_labs(conn, search: str = "", include_inactive: bool = False) -> List[Dict[str, object]]:
    where = "" if include_inactive else "WHERE is_active = 1"
    rows = [dict(row) for row in conn.execute(f"SELECT * FROM laboratories {where} ORDER BY display_order, name").fetchall()]
    needle = search.strip().lower()
    if not needle:
        return rows
    return [
        lab for lab in rows
        if needle in str(lab["name"] or "").lower()
        or needle in str(lab["head_name"] or "").lower()
        or needle in str(lab["short_name"] or "").lower()
    ]


def get_lab(conn, lab_id: Optional[int], public: bool = False) -> Optional[Dict[str, object]]:
    lab = get_record(conn, "labs", lab_id)
    if lab and public and not lab["is_active"]:
        return None
    return lab


def publication_years(conn, lab_id: int) -> List[int]:
    rows = conn.execute(
        "SELECT DISTINCT year FROM publication_entries WHERE lab_id = ? ORDER BY year DESC",
        (lab_id,),
    ).fetchall()
    return [int(row["year"]) for row in rows]


def publication_entries(conn, lab_id: int, year: int) -> List[Dict[str, object]]:
    rows = conn.execute(
        "SELECT * FROM publication_entries WHERE lab_id = ? AND year = ? ORDER BY display_order, id",
        (lab_id, year),
    ).fetchall()
    return [dict(row) for row in rows]


def group_member_names(group: Mapping[str, object]) -> List[str]:
    return [line for line in str(group.get("members") or "").splitlines() if line.strip()]
