"""Admin panel: sign-in, lab content editing and account management.

Routing follows the same explicit ``if req.path == ...`` dispatch as the
public side. Every handler returns a ``Response``; admin responses are
never frameable.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import Dict, List, Mapping, Optional
from urllib.parse import urlencode

from labsite import auth, db, records, settings, uploads
from labsite.frame_sync import FrameSyncConfig, embed_snippet
from labsite.helpers import h, to_int
from labsite.web import Request, Response, clear_cookie, not_found, redirect, set_cookie, with_msg

logger = logging.getLogger(__name__)

SESSION_COOKIE = "labs_session"
EDITOR_TABS = [
    ("info", "Informații"),
    ("groups", "Grupuri"),
    ("publications", "Publicații"),
    ("projects", "Proiecte"),
    ("infrastructure", "Infrastructură"),
]
LAB_EDITOR_RE = re.compile(r"^/admin/labs/(\d+)$")
RECORD_ROUTE_RE = re.compile(r"^/admin/records/([a-z]+)/(new|update|delete)$")


def forbidden() -> Response:
    return Response("<h1>403 Forbidden</h1><p>Nu aveți acces la această pagină.</p>", status="403 Forbidden")


def require_auth(ctx: Dict[str, object]) -> Optional[Response]:
    if not ctx.get("user"):
        return redirect("/admin/login")
    return None


def require_super(ctx: Dict[str, object]) -> Optional[Response]:
    if not auth.is_super_admin(ctx):
        return forbidden()
    return None


def validate_csrf(req: Request, ctx: Dict[str, object]) -> bool:
    if req.method not in {"POST", "PUT", "PATCH", "DELETE"}:
        return True
    csrf = req.form.get("csrf_token") or req.environ.get("HTTP_X_CSRF_TOKEN", "")
    return bool(csrf and csrf == ctx.get("csrf"))


def csrf_input(ctx: Mapping[str, object]) -> str:
    return f'<input type="hidden" name="csrf_token" value="{h(ctx.get("csrf", ""))}" />'


def editor_path(lab_id: object, tab: str = "info", **params: object) -> str:
    query = {"tab": tab}
    query.update({k: v for k, v in params.items() if v is not None})
    return f"/admin/labs/{lab_id}?{urlencode(query)}"


def nav_link(path: str, label: str, current: str) -> str:
    active = current == path if path == "/admin" else current.startswith(path)
    cls = "nav-link active" if active else "nav-link"
    aria = ' aria-current="page"' if active else ""
    return f'<a class="{cls}" href="{h(path)}"{aria}>{h(label)}</a>'


def nav_items(ctx: Mapping[str, object]) -> List[tuple]:
    if auth.is_super_admin(ctx):
        items = [("/admin", "Prezentare"), ("/admin/labs", "Laboratoare"), ("/admin/users", "Utilizatori")]
    else:
        items = [("/admin", "Prezentare"), ("/admin/my-lab", "Laboratorul meu")]
    return items + [("/admin/password", "Schimbă parola")]


def render_admin_layout(
    title: str,
    content: str,
    req: Request,
    ctx: Optional[Dict[str, object]] = None,
    notice: str = "",
) -> str:
    if ctx and ctx.get("user"):
        nav = "".join(nav_link(path, label, req.path) for path, label in nav_items(ctx))
        top_bar = f"""
        <header class="topbar">
          <h1><a class="brand-link" href="/admin">{h(settings.APP_NAME)}</a></h1>
          <nav class="admin-nav" aria-label="Administrare">{nav}</nav>
          <div class="top-actions">
            <a class="btn ghost" href="/labs" target="_blank" rel="noopener">Site public</a>
            <span class="user-chip">{h(ctx["user"]["email"])} &bull; {h(auth.ROLE_LABELS.get(str(ctx.get("role")), ""))}</span>
            <form method="post" action="/admin/logout">
              {csrf_input(ctx)}
              <button type="submit">Ieșire</button>
            </form>
          </div>
        </header>
        """
    else:
        top_bar = f'<header class="topbar"><h1>{h(settings.APP_NAME)}</h1></header>'

    alert = f'<div class="notice" role="status" aria-live="polite">{h(notice)}</div>' if notice else ""
    return f"""<!doctype html>
<html lang="ro">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width,initial-scale=1" />
    <title>{h(title)} | Admin {h(settings.APP_NAME)}</title>
    <link rel="stylesheet" href="/static/style.css" />
  </head>
  <body class="admin">
    <div class="container admin-shell">{top_bar}{alert}<main id="main-content">{content}</main></div>
  </body>
</html>
"""


def render_login(req: Request, error: str = "") -> str:
    body = f"""
    <section class="card auth">
      <h2>Autentificare</h2>
      <p class="muted">Folosiți contul instituțional @{h(settings.ALLOWED_EMAIL_DOMAIN)}.</p>
      {'<div class="error">' + h(error) + '</div>' if error else ''}
      <form method="post" action="/admin/login">
        <label>Email <input type="email" name="email" required /></label>
        <label>Parolă <input type="password" name="password" required /></label>
        <button type="submit">Intră în cont</button>
      </form>
    </section>
    """
    return render_admin_layout("Autentificare", body, req)


def render_password_form(req: Request, ctx: Dict[str, object], error: str = "") -> str:
    intro = (
        '<p class="notice">Trebuie să vă schimbați parola înainte de a continua.</p>'
        if ctx.get("must_change_password")
        else ""
    )
    body = f"""
    <section class="card auth">
      <h2>Schimbă parola</h2>
      {intro}
      {'<div class="error">' + h(error) + '</div>' if error else ''}
      <form method="post" action="/admin/password">
        {csrf_input(ctx)}
        <label>Parola nouă <input type="password" name="password" required minlength="{settings.MIN_PASSWORD_LENGTH}" /></label>
        <label>Confirmă parola <input type="password" name="password_confirm" required minlength="{settings.MIN_PASSWORD_LENGTH}" /></label>
        <button type="submit">Salvează parola</button>
      </form>
    </section>
    """
    return render_admin_layout("Schimbă parola", body, req, ctx)


def render_field_input(fld: records.Field, value: object = None) -> str:
    name = h(fld.name)
    label = h(fld.label)
    required = " required" if fld.required else ""
    current = "" if value is None else value
    if fld.kind in {"textarea", "lines"}:
        return f'<label>{label} <textarea name="{name}" rows="4"{required}>{h(current)}</textarea></label>'
    if fld.kind == "bool":
        checked = " checked" if value or value is None else ""
        return f'<label class="check"><input type="checkbox" name="{name}" value="1"{checked} /> {label}</label>'
    if fld.kind in {"int", "year"}:
        return f'<label>{label} <input type="number" name="{name}" value="{h(current)}"{required} /></label>'
    if fld.kind == "date":
        return f'<label>{label} <input type="date" name="{name}" value="{h(current)}" /></label>'
    if fld.kind == "status":
        options = "".join(
            f'<option value="{key}"{" selected" if key == (value or "active") else ""}>{h(text)}</option>'
            for key, text in records.PROJECT_STATUSES
        )
        return f'<label>{label} <select name="{name}">{options}</select></label>'
    if fld.kind == "email":
        return f'<label>{label} <input type="email" name="{name}" value="{h(current)}"{required} /></label>'
    if fld.kind in {"image", "document"}:
        accept = "image/*" if fld.kind == "image" else "application/pdf,application/*"
        limit = settings.IMAGE_MAX_MB if fld.kind == "image" else settings.DOCUMENT_MAX_MB
        preview = ""
        if value and fld.kind == "image":
            preview = f'<img class="thumb" src="{h(value)}" alt="" />'
        elif value:
            preview = f'<a href="{h(value)}" target="_blank" rel="noopener">Fișier curent</a>'
        return f"""
        <fieldset class="upload-field">
          <legend>{label}</legend>
          {preview}
          <label>Link <input type="text" name="{name}" value="{h(current)}" /></label>
          <label>Încarcă (max {limit}MB) <input type="file" name="{name}{records.FILE_FIELD_SUFFIX}" accept="{accept}" /></label>
        </fieldset>
        """
    return f'<label>{label} <input type="text" name="{name}" value="{h(current)}"{required} /></label>'


def render_record_form(
    ctx: Dict[str, object],
    entity: records.Entity,
    action: str,
    record: Optional[Mapping[str, object]] = None,
    parent_id: Optional[int] = None,
    hidden: Optional[Mapping[str, object]] = None,
    submit_label: str = "Salvează",
) -> str:
    include_super = auth.is_super_admin(ctx)
    fields = [
        render_field_input(fld, (record or {}).get(fld.name))
        for fld in entity.fields
        if (include_super or not fld.super_only) and fld.name not in (hidden or {})
    ]
    extra = [f'<input type="hidden" name="{h(k)}" value="{h(v)}" />' for k, v in (hidden or {}).items()]
    if record is not None:
        extra.append(f'<input type="hidden" name="id" value="{h(record["id"])}" />')
    elif parent_id is not None:
        extra.append(f'<input type="hidden" name="parent_id" value="{parent_id}" />')
    return f"""
    <form class="record-form" method="post" action="/admin/records/{entity.key}/{action}" enctype="multipart/form-data">
      {csrf_input(ctx)}
      {"".join(extra)}
      {"".join(fields)}
      <button type="submit">{h(submit_label)}</button>
    </form>
    """


def render_delete_form(ctx: Dict[str, object], entity: records.Entity, record: Mapping[str, object]) -> str:
    return f"""
    <form class="inline-form danger" method="post" action="/admin/records/{entity.key}/delete">
      {csrf_input(ctx)}
      <input type="hidden" name="id" value="{h(record["id"])}" />
      <button type="submit" class="btn danger">Șterge</button>
    </form>
    """


def record_title(entity: records.Entity, record: Mapping[str, object]) -> str:
    title = str(record.get(entity.title_field) or f"#{record['id']}")
    return title if len(title) <= 80 else title[:77] + "..."


def render_record_list(ctx: Dict[str, object], key: str, items: List[Dict[str, object]], empty: str) -> str:
    entity = records.entity_for(key)
    if not items:
        return f'<p class="empty">{h(empty)}</p>'
    blocks = []
    for item in items:
        blocks.append(
            f"""
            <details class="record">
              <summary>{h(record_title(entity, item))}</summary>
              {render_record_form(ctx, entity, "update", item)}
              {render_delete_form(ctx, entity, item)}
            </details>
            """
        )
    return "".join(blocks)


def render_add_block(ctx: Dict[str, object], key: str, parent_id: int, hidden: Optional[Mapping[str, object]] = None) -> str:
    entity = records.entity_for(key)
    return f"""
    <details class="record add">
      <summary>Adaugă {h(entity.label.lower())}</summary>
      {render_record_form(ctx, entity, "new", parent_id=parent_id, hidden=hidden, submit_label="Adaugă")}
    </details>
    """


def render_overview(conn, ctx: Dict[str, object]) -> str:
    if auth.is_super_admin(ctx):
        labs_total = db.count_rows(conn, "laboratories")
        users_total = db.count_rows(conn, "users")
        snippet = embed_snippet(settings.PUBLIC_BASE_URL, FrameSyncConfig.from_settings())
        return f"""
        <section class="stats">
          <article class="card stat"><h3>{labs_total}</h3><p>Laboratoare</p></article>
          <article class="card stat"><h3>{users_total}</h3><p>Utilizatori</p></article>
        </section>
        <section class="card">
          <h2>Acțiuni rapide</h2>
          <p><a class="btn" href="/admin/labs">Gestionează laboratoarele</a> <a class="btn" href="/admin/users">Gestionează utilizatorii</a></p>
        </section>
        <section class="card">
          <h2>Cod de încorporare</h2>
          <p class="muted">Lipiți acest cod într-un bloc HTML personalizat din WordPress.</p>
          <pre class="snippet"><code>{h(snippet)}</code></pre>
        </section>
        """
    lab = records.get_lab(conn, ctx.get("lab_id"))
    if lab is None:
        return '<section class="card"><p>Nu aveți un laborator atribuit. Contactați administratorul.</p></section>'
    return f"""
    <section class="card">
      <h2>{h(lab["name"])}</h2>
      <p class="muted">{h(lab["head_name"])}</p>
      <p><a class="btn" href="{h(editor_path(lab["id"]))}">Editează laboratorul</a></p>
    </section>
    """


def render_labs_admin(conn, ctx: Dict[str, object], search: str = "") -> str:
    labs = records.list_labs(conn, search, include_inactive=True)
    rows = "".join(
        f"""
        <tr>
          <td><a href="{h(editor_path(lab["id"]))}">{h(lab["name"])}</a></td>
          <td>{h(lab["head_name"])}</td>
          <td>{h(lab["display_order"])}</td>
          <td>{'<span class="pill">Activ</span>' if lab["is_active"] else '<span class="pill soft">Inactiv</span>'}</td>
        </tr>
        """
        for lab in labs
    )
    table = (
        f'<table class="table"><thead><tr><th>Nume</th><th>Șef</th><th>Ordine</th><th>Stare</th></tr></thead><tbody>{rows}</tbody></table>'
        if labs
        else '<p class="empty">Niciun laborator.</p>'
    )
    return f"""
    <section class="card">
      <h2>Laboratoare</h2>
      <form class="search-box" method="get" action="/admin/labs">
        <input type="search" name="q" value="{h(search)}" placeholder="Caută..." />
        <button type="submit">Caută</button>
      </form>
      {table}
    </section>
    <section class="card">
      <h2>Laborator nou</h2>
      {render_record_form(ctx, records.entity_for("labs"), "new", submit_label="Creează laborator")}
    </section>
    """


def render_groups_tab(conn, ctx: Dict[str, object], lab: Mapping[str, object], group_id: Optional[int]) -> str:
    lab_id = int(lab["id"])
    group = records.get_record(conn, "groups", group_id)
    if group is not None and int(group["lab_id"]) == lab_id:
        members = records.list_records(conn, "members", int(group["id"]))
        results = records.list_records(conn, "results", int(group["id"]))
        return f"""
        <p><a href="{h(editor_path(lab_id, "groups"))}">&larr; Toate grupurile</a></p>
        <h2>{h(group["name"])}</h2>
        <section>
          <h3>Membri</h3>
          {render_record_list(ctx, "members", members, "Niciun membru adăugat.")}
          {render_add_block(ctx, "members", int(group["id"]))}
        </section>
        <section>
          <h3>Rezultate</h3>
          {render_record_list(ctx, "results", results, "Niciun rezultat adăugat.")}
          {render_add_block(ctx, "results", int(group["id"]))}
        </section>
        """
    groups = records.list_records(conn, "groups", lab_id)
    entity = records.entity_for("groups")
    blocks = []
    for item in groups:
        blocks.append(
            f"""
            <details class="record">
              <summary>{h(record_title(entity, item))}</summary>
              <p><a href="{h(editor_path(lab_id, "groups", group=item["id"]))}">Membri și rezultate</a></p>
              {render_record_form(ctx, entity, "update", item)}
              {render_delete_form(ctx, entity, item)}
            </details>
            """
        )
    listing = "".join(blocks) or '<p class="empty">Niciun grup de cercetare.</p>'
    return listing + render_add_block(ctx, "groups", lab_id)


def render_publications_tab(conn, ctx: Dict[str, object], lab: Mapping[str, object], query: Mapping[str, str]) -> tuple:
    """Returns (html, notice); notice is set when a requested new year is rejected."""
    lab_id = int(lab["id"])
    years = records.publication_years(conn, lab_id)
    notice = ""
    selected = to_int(query.get("year"))
    raw_new = query.get("new_year", "").strip()
    if raw_new:
        try:
            new_year = records.clean_field(records.entity_for("publications").field("year"), raw_new)
        except records.RecordValidationError as exc:
            notice = str(exc)
        else:
            if new_year in years:
                notice = f"Anul {new_year} există deja"
            else:
                selected = new_year
    if selected is None and years:
        selected = years[0]

    chips = "".join(
        f'<a class="year-chip{" active" if y == selected else ""}" href="{h(editor_path(lab_id, "publications", year=y))}">{y}</a>'
        for y in years
    )
    add_year = f"""
    <form class="inline-form" method="get" action="/admin/labs/{lab_id}">
      <input type="hidden" name="tab" value="publications" />
      <label>An nou <input type="number" name="new_year" min="1900" required /></label>
      <button type="submit">Adaugă an</button>
    </form>
    """
    if selected is None:
        return f'<p class="empty">Nicio publicație.</p>{add_year}', notice
    entries = records.publication_entries(conn, lab_id, selected)
    body = f"""
    <nav class="year-chips">{chips}</nav>
    {add_year}
    <h2>{selected}</h2>
    {render_record_list(ctx, "publications", entries, "Nicio publicație pentru acest an.")}
    {render_add_block(ctx, "publications", lab_id, hidden={"year": selected})}
    """
    return body, notice


def render_lab_editor(conn, ctx: Dict[str, object], lab: Mapping[str, object], query: Mapping[str, str]) -> tuple:
    lab_id = int(lab["id"])
    tab = query.get("tab", "info")
    if tab not in dict(EDITOR_TABS):
        tab = "info"
    notice = ""
    if tab == "groups":
        body = render_groups_tab(conn, ctx, lab, to_int(query.get("group")))
    elif tab == "publications":
        body, notice = render_publications_tab(conn, ctx, lab, query)
    elif tab in {"projects", "infrastructure"}:
        items = records.list_records(conn, tab, lab_id)
        body = render_record_list(ctx, tab, items, "Nicio înregistrare.") + render_add_block(ctx, tab, lab_id)
    else:
        entity = records.entity_for("labs")
        body = render_record_form(ctx, entity, "update", lab)
        if auth.is_super_admin(ctx):
            body += f"""
            <details class="danger-zone">
              <summary>Șterge laboratorul</summary>
              <p>Toate grupurile, publicațiile, proiectele și echipamentele vor fi șterse.</p>
              {render_delete_form(ctx, entity, lab)}
            </details>
            """
    tabs = "".join(
        f'<a class="tab{" active" if key == tab else ""}" href="{h(editor_path(lab_id, key))}">{h(label)}</a>'
        for key, label in EDITOR_TABS
    )
    html = f"""
    <section class="card">
      <header class="editor-head">
        <h2>{h(lab["name"])}</h2>
        <a class="btn ghost" href="/labs?lab={lab_id}" target="_blank" rel="noopener">Vezi pagina publică</a>
      </header>
      <nav class="tabs">{tabs}</nav>
      <div class="tab-content">{body}</div>
    </section>
    """
    return html, notice


def render_users_admin(conn, ctx: Dict[str, object], search: str = "", created: Optional[Mapping[str, str]] = None) -> str:
    users = auth.list_users(conn, search)
    labs = records.list_labs(conn, include_inactive=True)
    lab_options = "".join(f'<option value="{lab["id"]}">{h(lab["name"])}</option>' for lab in labs)
    role_options = "".join(f'<option value="{key}">{h(label)}</option>' for key, label in auth.ROLE_LABELS.items())
    rows = []
    for user in users:
        actions = ""
        if int(user["id"]) != int(ctx["user"]["id"]):
            actions = f"""
            <form class="inline-form" method="post" action="/admin/users/reset-password">
              {csrf_input(ctx)}<input type="hidden" name="user_id" value="{user["id"]}" />
              <button type="submit" class="btn ghost">Resetează parola</button>
            </form>
            <form class="inline-form" method="post" action="/admin/users/delete">
              {csrf_input(ctx)}<input type="hidden" name="user_id" value="{user["id"]}" />
              <button type="submit" class="btn danger">Șterge</button>
            </form>
            """
        pending = ' <span class="pill soft">Parolă temporară</span>' if user["must_change_password"] else ""
        rows.append(
            f"""
            <tr>
              <td>{h(user["email"])}{pending}</td>
              <td>{h(auth.ROLE_LABELS.get(str(user["role"]), "-"))}</td>
              <td>{h(user["lab_name"] or "-")}</td>
              <td>{actions}</td>
            </tr>
            """
        )
    created_html = ""
    if created:
        created_html = f"""
        <section class="card highlight" role="status">
          <h3>Parolă temporară pentru {h(created["email"])}</h3>
          <p><code class="temp-password">{h(created["password"])}</code></p>
          <p class="muted">Parola este afișată o singură dată. Utilizatorul va fi obligat să o schimbe la prima autentificare.</p>
        </section>
        """
    return f"""
    {created_html}
    <section class="card">
      <h2>Utilizatori</h2>
      <form class="search-box" method="get" action="/admin/users">
        <input type="search" name="q" value="{h(search)}" placeholder="Caută după email sau laborator..." />
        <button type="submit">Caută</button>
      </form>
      <table class="table">
        <thead><tr><th>Email</th><th>Rol</th><th>Laborator</th><th></th></tr></thead>
        <tbody>{"".join(rows)}</tbody>
      </table>
    </section>
    <section class="card">
      <h2>Utilizator nou</h2>
      <form method="post" action="/admin/users/new">
        {csrf_input(ctx)}
        <label>Email <input type="email" name="email" required placeholder="nume@{h(settings.ALLOWED_EMAIL_DOMAIN)}" /></label>
        <label>Rol <select name="role">{role_options}</select></label>
        <label>Laborator (pentru admin laborator) <select name="lab_id"><option value="">-</option>{lab_options}</select></label>
        <button type="submit">Creează cont</button>
      </form>
    </section>
    """


def record_return_path(key: str, lab_id: Optional[int], record: Mapping[str, object]) -> str:
    if key == "labs":
        return editor_path(lab_id, "info") if lab_id else "/admin/labs"
    if key in {"members", "results"}:
        return editor_path(lab_id, "groups", group=record.get("group_id"))
    if key == "publications":
        return editor_path(lab_id, "publications", year=record.get("year"))
    return editor_path(lab_id, key)


def handle_login(conn, req: Request) -> Response:
    if not auth.enforce_rate_limit(req.client_ip):
        return Response(
            render_login(req, "Prea multe încercări de autentificare. Încercați mai târziu."),
            status="429 Too Many Requests",
        )
    email = auth.normalize_email(req.form.get("email"))
    password = req.form.get("password", "")
    if not auth.email_domain_allowed(email):
        return Response(render_login(req, f"Doar adresele @{settings.ALLOWED_EMAIL_DOMAIN} au acces."))
    user = auth.authenticate(conn, email, password)
    if not user:
        logger.info("Failed sign-in for %s from %s", email, req.client_ip)
        return Response(render_login(req, "Email sau parolă incorectă."))
    if not conn.execute("SELECT id FROM user_roles WHERE user_id = ?", (user["id"],)).fetchone():
        return Response(render_login(req, "Contul nu are un rol atribuit."))
    token, _csrf = auth.create_session(conn, int(user["id"]), req.client_ip, req.user_agent)
    conn.commit()
    logger.info("User %s signed in", email)
    cookie = set_cookie(SESSION_COOKIE, token, max_age=settings.SESSION_DAYS * 24 * 3600)
    return redirect("/admin", cookies=[cookie])


def handle_record_action(conn, req: Request, ctx: Dict[str, object], key: str, action: str) -> Response:
    entity = records.ENTITIES.get(key)
    if entity is None:
        return not_found()
    is_super = auth.is_super_admin(ctx)
    if key == "labs" and action in {"new", "delete"} and not is_super:
        return forbidden()

    current: Optional[Dict[str, object]] = None
    if action == "new":
        parent_id = to_int(req.form.get("parent_id"))
        lab_id = records.lab_id_for_parent(conn, key, parent_id) if entity.parent else None
        if entity.parent and not auth.can_edit_lab(ctx, lab_id):
            return forbidden()
    else:
        current = records.get_record(conn, key, to_int(req.form.get("id")))
        if current is None:
            return not_found("Înregistrarea nu a fost găsită.")
        lab_id = records.lab_id_for_record(conn, key, current)
        parent_id = to_int(current.get(entity.parent)) if entity.parent else None
        if not auth.can_edit_lab(ctx, lab_id):
            return forbidden()

    back = record_return_path(key, lab_id, current or {"group_id": parent_id, "year": req.form.get("year")})
    if action == "delete":
        stale = records.owned_uploads(conn, key, current)
        records.delete_record(conn, key, int(current["id"]))
        conn.commit()
        records.purge_uploads(conn, stale)
        if key == "labs":
            return redirect(with_msg("/admin/labs", "Laboratorul a fost șters."))
        return redirect(with_msg(back, "Înregistrarea a fost ștearsă."))

    written: List[str] = []
    try:
        values = records.clean_form(entity, req.form, include_super_fields=is_super)
        if action == "new" and not str(req.form.get("display_order", "")).strip():
            values.pop("display_order", None)
        written = records.apply_uploads(conn, entity, values, req.files, lab_id, ctx["user"]["id"])
        stale = records.replaced_uploads(entity, values, current)
        if action == "new":
            record_id = records.create_record(conn, key, parent_id, values)
            message = f"{entity.label} adăugat."
        else:
            record_id = int(current["id"])
            records.update_record(conn, key, record_id, values)
            message = "Modificările au fost salvate."
        conn.commit()
    except (records.RecordValidationError, uploads.UploadError) as exc:
        conn.rollback()
        uploads.discard_files(written)
        return redirect(with_msg(back, str(exc)))
    except sqlite3.IntegrityError:
        conn.rollback()
        uploads.discard_files(written)
        logger.warning("Integrity error saving %s", entity.table, exc_info=True)
        return redirect(with_msg(back, "Datele nu au putut fi salvate."))
    records.purge_uploads(conn, stale)

    if key == "labs":
        back = editor_path(record_id, "info")
    elif key == "publications":
        back = editor_path(lab_id, "publications", year=values.get("year"))
    return redirect(with_msg(back, message))


def handle_admin(conn, req: Request) -> Response:
    token = req.cookies.get(SESSION_COOKIE)
    ctx = auth.get_auth_context(conn, token)
    notice = req.query.get("msg", "")

    if req.path == "/admin/login" and req.method == "GET":
        if ctx.get("user"):
            return redirect("/admin")
        return Response(render_login(req, error=notice))
    if req.path == "/admin/login" and req.method == "POST":
        return handle_login(conn, req)

    gate = require_auth(ctx)
    if gate:
        return gate
    if not validate_csrf(req, ctx):
        return Response("<h1>400 Bad Request</h1><p>Token CSRF invalid.</p>", status="400 Bad Request")

    if req.path == "/admin/logout" and req.method == "POST":
        auth.revoke_session(conn, token)
        conn.commit()
        return redirect("/admin/login", cookies=[clear_cookie(SESSION_COOKIE)])

    if req.path == "/admin/password" and req.method == "GET":
        return Response(render_password_form(req, ctx))
    if req.path == "/admin/password" and req.method == "POST":
        password = req.form.get("password", "")
        try:
            auth.validate_new_password(password, req.form.get("password_confirm", ""))
        except auth.AccountError as exc:
            return Response(render_password_form(req, ctx, str(exc)))
        auth.set_password(conn, int(ctx["user"]["id"]), password, keep_token=token)
        conn.commit()
        logger.info("User %s changed their password", ctx["user"]["email"])
        return redirect(with_msg("/admin", "Parola a fost schimbată."))

    if ctx.get("must_change_password"):
        return redirect("/admin/password")

    if req.path in {"/admin", "/admin/"} and req.method == "GET":
        return Response(render_admin_layout("Prezentare", render_overview(conn, ctx), req, ctx, notice))

    if req.path == "/admin/my-lab" and req.method == "GET":
        if auth.is_super_admin(ctx):
            return redirect("/admin/labs")
        if ctx.get("lab_id") is None:
            body = '<section class="card"><p>Nu aveți un laborator atribuit. Contactați administratorul.</p></section>'
            return Response(render_admin_layout("Laboratorul meu", body, req, ctx, notice))
        return redirect(editor_path(ctx["lab_id"]))

    if req.path == "/admin/labs" and req.method == "GET":
        gate = require_super(ctx)
        if gate:
            return gate
        body = render_labs_admin(conn, ctx, req.query.get("q", ""))
        return Response(render_admin_layout("Laboratoare", body, req, ctx, notice))

    match = LAB_EDITOR_RE.match(req.path)
    if match and req.method == "GET":
        lab_id = int(match.group(1))
        if not auth.can_edit_lab(ctx, lab_id):
            return forbidden()
        lab = records.get_lab(conn, lab_id)
        if lab is None:
            return not_found("Laboratorul nu a fost găsit.")
        body, tab_notice = render_lab_editor(conn, ctx, lab, req.query)
        return Response(render_admin_layout(str(lab["name"]), body, req, ctx, tab_notice or notice))

    match = RECORD_ROUTE_RE.match(req.path)
    if match and req.method == "POST":
        return handle_record_action(conn, req, ctx, match.group(1), match.group(2))

    if req.path.startswith("/admin/users"):
        gate = require_super(ctx)
        if gate:
            return gate

        if req.path == "/admin/users" and req.method == "GET":
            body = render_users_admin(conn, ctx, req.query.get("q", ""))
            return Response(render_admin_layout("Utilizatori", body, req, ctx, notice))

        if req.path == "/admin/users/new" and req.method == "POST":
            email = auth.normalize_email(req.form.get("email"))
            role = req.form.get("role", auth.LAB_ADMIN)
            try:
                _user_id, password = auth.create_user(conn, email, role, to_int(req.form.get("lab_id")))
                conn.commit()
            except auth.AccountError as exc:
                conn.rollback()
                return redirect(with_msg("/admin/users", str(exc)))
            except sqlite3.IntegrityError:
                conn.rollback()
                return redirect(with_msg("/admin/users", "Există deja un cont cu acest email."))
            logger.info("User %s created by %s", email, ctx["user"]["email"])
            body = render_users_admin(conn, ctx, created={"email": email, "password": password})
            return Response(render_admin_layout("Utilizatori", body, req, ctx, "Contul a fost creat."))

        if req.path == "/admin/users/reset-password" and req.method == "POST":
            user_id = to_int(req.form.get("user_id"))
            try:
                password = auth.reset_password(conn, user_id)
                conn.commit()
            except auth.AccountError as exc:
                conn.rollback()
                return redirect(with_msg("/admin/users", str(exc)))
            row = conn.execute("SELECT email FROM users WHERE id = ?", (user_id,)).fetchone()
            logger.info("Password reset for user #%s by %s", user_id, ctx["user"]["email"])
            body = render_users_admin(conn, ctx, created={"email": row["email"], "password": password})
            return Response(render_admin_layout("Utilizatori", body, req, ctx, "Parola a fost resetată."))

        if req.path == "/admin/users/delete" and req.method == "POST":
            try:
                auth.delete_user(conn, to_int(req.form.get("user_id")), int(ctx["user"]["id"]))
                conn.commit()
            except auth.AccountError as exc:
                conn.rollback()
                return redirect(with_msg("/admin/users", str(exc)))
            return redirect(with_msg("/admin/users", "Utilizatorul a fost șters."))

    return not_found()
