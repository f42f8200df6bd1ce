"""Public laboratory directory, rendered for embedding in the institute site."""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional
from urllib.parse import urlencode

from labsite import records, settings
from labsite.frame_sync import FrameSyncConfig
from labsite.helpers import h, to_int
from labsite.linkify import linked_html
from labsite.web import Request, Response

LAB_TABS = [
    ("descriere", "Descriere"),
    ("grupuri", "Grupuri cercetare"),
    ("publicatii", "Publicații"),
    ("proiecte", "Proiecte"),
    ("infrastructura", "Infrastructură"),
]
DEFAULT_TAB = "descriere"
LIST_PATH = "/labs"


def lab_url(lab_id: object, **params: object) -> str:
    query = {"lab": lab_id}
    query.update({k: v for k, v in params.items() if v is not None})
    return f"/labs?{urlencode(query)}"


def render_public_layout(title: str, content: str) -> str:
    return f"""<!doctype html>
<html lang="ro">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width,initial-scale=1" />
    <title>{h(title)} | {h(settings.APP_NAME)}</title>
    <link rel="stylesheet" href="/static/style.css" />
    <script defer src="/static/frame-reporter.js"></script>
  </head>
  <body class="public">
    <div class="embed-container"><main class="container">{content}</main></div>
  </body>
</html>
"""


def render_lab_card(lab: Mapping[str, object]) -> str:
    if lab.get("explore_url"):
        link = f'<a class="btn" href="{h(lab["explore_url"])}" target="_blank" rel="noopener noreferrer">Explorează</a>'
    else:
        link = f'<a class="btn" href="{h(lab_url(lab["id"]))}">Explorează</a>'
    return f"""
    <article class="lab-card">
      <div class="lab-card-body">
        <h3>{h(lab["name"])}</h3>
        <p class="muted">{h(lab["head_name"])}</p>
      </div>
      {link}
    </article>
    """


def render_lab_list(conn, search: str = "") -> str:
    labs = records.list_labs(conn, search)
    if labs:
        grid = f'<div class="lab-grid">{"".join(render_lab_card(lab) for lab in labs)}</div>'
    elif search.strip():
        grid = '<p class="empty">Niciun laborator găsit pentru această căutare.</p>'
    else:
        grid = '<p class="empty">Nu există laboratoare disponibile momentan.</p>'
    return f"""
    <section class="directory">
      <header class="directory-head">
        <h1>{h(settings.APP_NAME)}</h1>
        <p class="muted">{h(settings.APP_TAGLINE)}</p>
      </header>
      <form class="search-box" method="get" action="/labs">
        <input type="search" name="q" value="{h(search)}" placeholder="Caută laborator sau șef de laborator..." />
        <button type="submit">Caută</button>
      </form>
      {grid}
    </section>
    """


def render_tab_description(lab: Mapping[str, object]) -> str:
    if not lab.get("description"):
        return '<p class="empty">Nu există descriere disponibilă pentru acest laborator.</p>'
    return f'<div class="prose">{linked_html(lab["description"])}</div>'


def render_group_card(lab: Mapping[str, object], group: Mapping[str, object]) -> str:
    leader = ""
    if group.get("leader_name"):
        email = ""
        if group.get("leader_email"):
            email = f' &bull; <a href="mailto:{h(group["leader_email"])}">{h(group["leader_email"])}</a>'
        leader = f'<p class="muted">Lider: {h(group["leader_name"])}{email}</p>'
    topics = f'<p><strong>Teme:</strong> {linked_html(group["topics"])}</p>' if group.get("topics") else ""
    names = records.group_member_names(group)
    members = ""
    if names:
        chips = "".join(f'<span class="chip">{h(name)}</span>' for name in names)
        members = f'<div class="members"><h4>Membri:</h4><div class="chips">{chips}</div></div>'
    return f"""
    <article class="card">
      <h3><a href="{h(lab_url(lab["id"], tab="grupuri", group=group["id"]))}">{h(group["name"])}</a></h3>
      {leader}
      {f'<p>{linked_html(group["description"])}</p>' if group.get("description") else ''}
      {topics}
      {members}
    </article>
    """


def render_group_detail(conn, lab: Mapping[str, object], group: Mapping[str, object]) -> str:
    people = []
    for member in records.list_records(conn, "members", int(group["id"])):
        photo = f'<img class="avatar" src="{h(member["photo_url"])}" alt="{h(member["name"])}" />' if member.get("photo_url") else ""
        bits = []
        if member.get("position"):
            bits.append(f'<p class="muted">{h(member["position"])}</p>')
        if member.get("email"):
            bits.append(f'<p><a href="mailto:{h(member["email"])}">{h(member["email"])}</a></p>')
        if member.get("description"):
            bits.append(f"<p>{linked_html(member['description'])}</p>")
        if member.get("cv_url"):
            bits.append(f'<p><a href="{h(member["cv_url"])}" target="_blank" rel="noopener noreferrer">CV</a></p>')
        people.append(f'<article class="member-card">{photo}<div><h4>{h(member["name"])}</h4>{"".join(bits)}</div></article>')

    results = []
    for result in records.list_records(conn, "results", int(group["id"])):
        image = f'<img src="{h(result["image_url"])}" alt="{h(result.get("title") or "")}" />' if result.get("image_url") else ""
        title = f'<h4>{h(result["title"])}</h4>' if result.get("title") else ""
        body = f"<p>{linked_html(result['content'])}</p>" if result.get("content") else ""
        results.append(f'<article class="card">{title}{image}{body}</article>')

    if not people and not results:
        content = '<p class="empty">Nu există informații suplimentare pentru acest grup.</p>'
    else:
        content = ""
        if people:
            content += f'<section><h3>Membri</h3><div class="member-grid">{"".join(people)}</div></section>'
        if results:
            content += f'<section><h3>Rezultate</h3>{"".join(results)}</section>'
    return f"""
    <p><a href="{h(lab_url(lab["id"], tab="grupuri"))}">&larr; Toate grupurile</a></p>
    <h2>{h(group["name"])}</h2>
    {f'<p>{linked_html(group["description"])}</p>' if group.get("description") else ''}
    {content}
    """


def render_tab_groups(conn, lab: Mapping[str, object], group_id: Optional[int] = None) -> str:
    groups = records.list_records(conn, "groups", int(lab["id"]))
    if group_id is not None:
        group = next((g for g in groups if int(g["id"]) == group_id), None)
        if group is not None:
            return render_group_detail(conn, lab, group)
    if not groups:
        return '<p class="empty">Nu există grupuri de cercetare înregistrate.</p>'
    return "".join(render_group_card(lab, group) for group in groups)


def render_tab_publications(conn, lab: Mapping[str, object], year: Optional[int] = None) -> str:
    years = records.publication_years(conn, int(lab["id"]))
    if not years:
        return '<p class="empty">Nu există publicații înregistrate.</p>'
    selected = year if year in years else years[0]
    chips = "".join(
        f'<a class="year-chip{" active" if y == selected else ""}" href="{h(lab_url(lab["id"], tab="publicatii", year=y))}">{y}</a>'
        for y in years
    )
    entries = records.publication_entries(conn, int(lab["id"]), selected)
    items = "".join(f"<li>{linked_html(entry['content'])}</li>" for entry in entries)
    return f"""
    <nav class="year-chips" aria-label="Ani">{chips}</nav>
    <h2 class="year-title">{selected}</h2>
    <ol class="publications">{items}</ol>
    """


def _project_status_label(value: object) -> str:
    return dict(records.PROJECT_STATUSES).get(str(value or ""), str(value or ""))


def render_tab_projects(conn, lab: Mapping[str, object]) -> str:
    projects = records.list_records(conn, "projects", int(lab["id"]))
    if not projects:
        return '<p class="empty">Nu există proiecte înregistrate.</p>'
    cards = []
    for project in projects:
        meta = []
        for key, label in (("project_code", "Cod"), ("director_name", "Director"), ("funding_source", "Finanțare"), ("budget", "Buget")):
            if project.get(key):
                meta.append(f"<li><strong>{label}:</strong> {h(project[key])}</li>")
        if project.get("start_date") or project.get("end_date"):
            meta.append(f"<li><strong>Perioadă:</strong> {h(project.get('start_date') or '?')} - {h(project.get('end_date') or '?')}</li>")
        link = f'<p><a href="{h(project["url"])}" target="_blank" rel="noopener noreferrer">Detalii</a></p>' if project.get("url") else ""
        cards.append(
            f"""
            <article class="card">
              <h3>{h(project["title"])} <span class="pill">{h(_project_status_label(project.get("status")))}</span></h3>
              <ul class="meta">{"".join(meta)}</ul>
              {f'<p>{linked_html(project["description"])}</p>' if project.get("description") else ''}
              {link}
            </article>
            """
        )
    return "".join(cards)


def render_tab_infrastructure(conn, lab: Mapping[str, object]) -> str:
    items = records.list_records(conn, "infrastructure", int(lab["id"]))
    if not items:
        return '<p class="empty">Nu există echipamente înregistrate.</p>'
    cards = []
    for item in items:
        image = f'<img src="{h(item["image_url"])}" alt="{h(item["name"])}" />' if item.get("image_url") else ""
        extras = []
        if item.get("specifications"):
            extras.append(f"<div><strong>Specificații:</strong><p>{linked_html(item['specifications'])}</p></div>")
        if item.get("responsible_name"):
            email = f' (<a href="mailto:{h(item["responsible_email"])}">{h(item["responsible_email"])}</a>)' if item.get("responsible_email") else ""
            extras.append(f"<p><strong>Responsabil:</strong> {h(item['responsible_name'])}{email}</p>")
        if item.get("external_link"):
            extras.append(f'<p><a href="{h(item["external_link"])}" target="_blank" rel="noopener noreferrer">Link extern</a></p>')
        if item.get("document_url"):
            extras.append(f'<p><a href="{h(item["document_url"])}" target="_blank" rel="noopener noreferrer">Document</a></p>')
        cards.append(
            f"""
            <article class="card infra-card">
              {image}
              <div>
                <h3>{h(item["name"])}</h3>
                {f'<p>{linked_html(item["description"])}</p>' if item.get("description") else ''}
                {"".join(extras)}
              </div>
            </article>
            """
        )
    return "".join(cards)


def render_lab_header(lab: Mapping[str, object]) -> str:
    logo = f'<img class="lab-logo" src="{h(lab["logo_url"])}" alt="{h(lab["name"])}" />' if lab.get("logo_url") else '<div class="lab-logo placeholder"></div>'
    contacts = [f"<span>{h(lab['head_name'])}</span>"]
    if lab.get("contact_email"):
        contacts.append(f'<a href="mailto:{h(lab["contact_email"])}">{h(lab["contact_email"])}</a>')
    if lab.get("contact_phone"):
        contacts.append(f'<a href="tel:{h(lab["contact_phone"])}">{h(lab["contact_phone"])}</a>')
    address = f'<p class="address">{h(lab["address"])}</p>' if lab.get("address") else ""
    return f"""
    <header class="lab-header">
      {logo}
      <div>
        <h1>{h(lab["name"])}</h1>
        <p class="contacts">{" &bull; ".join(contacts)}</p>
        {address}
      </div>
    </header>
    """


def render_lab_detail(conn, lab_id: Optional[int], query: Dict[str, str]) -> str:
    lab = records.get_lab(conn, lab_id, public=True)
    if lab is None:
        return f"""
        <section class="empty">
          <p>Laboratorul nu a fost găsit.</p>
          <a class="btn ghost" href="{LIST_PATH}">Înapoi la listă</a>
        </section>
        """
    tab = query.get("tab", DEFAULT_TAB)
    if tab not in dict(LAB_TABS):
        tab = DEFAULT_TAB
    tabs = "".join(
        f'<a class="tab{" active" if key == tab else ""}" href="{h(lab_url(lab["id"], tab=key))}"'
        f'{" aria-current=page" if key == tab else ""}>{h(label)}</a>'
        for key, label in LAB_TABS
    )
    if tab == "grupuri":
        body = render_tab_groups(conn, lab, to_int(query.get("group")))
    elif tab == "publicatii":
        body = render_tab_publications(conn, lab, to_int(query.get("year")))
    elif tab == "proiecte":
        body = render_tab_projects(conn, lab)
    elif tab == "infrastructura":
        body = render_tab_infrastructure(conn, lab)
    else:
        body = render_tab_description(lab)
    return f"""
    <p><a class="back-link" href="{LIST_PATH}">&larr; Toate laboratoarele</a></p>
    {render_lab_header(lab)}
    <nav class="tabs" aria-label="Secțiuni laborator">{tabs}</nav>
    <section class="tab-content">{body}</section>
    """


def labs_page(conn, req: Request) -> Response:
    lab_id = to_int(req.query.get("lab"))
    if req.query.get("lab"):
        title = "Laborator"
        content = render_lab_detail(conn, lab_id, req.query)
    else:
        title = "Laboratoare"
        content = render_lab_list(conn, req.query.get("q", ""))
    return Response(
        render_public_layout(title, content),
        frame_ancestors=FrameSyncConfig.from_settings().frame_ancestors(),
    )


def public_labs_payload(conn) -> List[Dict[str, object]]:
    return [
        {"id": lab["id"], "name": lab["name"], "short_name": lab["short_name"], "head_name": lab["head_name"], "explore_url": lab["explore_url"]}
        for lab in records.list_labs(conn)
    ]
