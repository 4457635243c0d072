from __future__ import annotations

import asyncio
import os
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List
from urllib.parse import urlencode

from flask import Flask, Response, jsonify, request
from reactpy import component, hooks, html
from reactpy.backend.flask import Options, configure

import store
from history import (
    DateRange,
    ExportError,
    UpstreamError,
    ValidationError,
    column_label,
    export_csv,
    export_filename,
    fetch_range,
    format_cell_value,
    order_columns,
)
from settings import current_actor, load_dotenv, required_env
from sync import EditableRow, StateSynchronizer, build_rows
from tracker_fields import FIELD_DEFS, TIMED_FLAG_FIELD, GoldenGoose, expiry_label, is_expired

load_dotenv()

app = Flask(__name__)

try:
    required_env("DATABASE_URL")
except RuntimeError as exc:
    raise RuntimeError("DATABASE_URL environment variable is required") from exc

HISTORY_DEFAULT_DAYS = 7


def load_dashboard_data() -> Dict[str, Any]:
    actor = current_actor()
    characters = store.fetch_characters(actor)
    states = store.fetch_daily_states(actor)
    return {
        "actor": actor,
        "rows": build_rows(characters, states),
        "updated": datetime.now().strftime("%Y-%m-%d %H:%M"),
    }


def load_dashboard_data_safe() -> Dict[str, Any]:
    try:
        data = load_dashboard_data()
    except (store.StoreError, RuntimeError) as exc:
        app.logger.exception("Failed to load dashboard data")
        return {
            "actor": "",
            "rows": [],
            "updated": datetime.now().strftime("%Y-%m-%d %H:%M"),
            "error": str(exc),
        }
    data["error"] = ""
    return data


def load_history_safe(start: str, end: str) -> Dict[str, Any]:
    try:
        date_range = DateRange.from_params(start, end)
        rows = fetch_range(current_actor(), date_range)
    except ValidationError as exc:
        return {"rows": [], "columns": [], "error": str(exc)}
    except (UpstreamError, RuntimeError) as exc:
        app.logger.exception("Failed to fetch history_log")
        return {"rows": [], "columns": [], "error": str(exc)}
    return {"rows": rows, "columns": order_columns(rows), "error": ""}


async def load_history_async(start: str, end: str) -> Dict[str, Any]:
    return await asyncio.to_thread(load_history_safe, start, end)


def export_href(start: str, end: str) -> str:
    params = {key: value for key, value in (("start", start), ("end", end)) if value}
    query = urlencode(params)
    return f"/api/export?{query}" if query else "/api/export"


async def persist_daily_state(payload: Dict[str, Any]) -> None:
    await asyncio.to_thread(store.upsert_daily_state, payload)


@app.route("/api/health")
def api_health():
    try:
        ok = store.ping()
    except store.StoreError as exc:
        app.logger.exception("Database health check failed")
        return jsonify({"ok": False, "error": str(exc)}), 503
    return jsonify({"ok": ok})


@app.route("/api/export")
def api_export():
    try:
        date_range = DateRange.from_params(request.args.get("start"), request.args.get("end"))
        csv_body = export_csv(current_actor(), date_range)
    except ValidationError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400
    except (ExportError, RuntimeError) as exc:
        app.logger.exception("history_log CSV export failed")
        return jsonify({"ok": False, "error": str(exc)}), 500

    return Response(
        csv_body,
        content_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{export_filename(date_range)}"',
            "Cache-Control": "no-store",
        },
    )


def run_reset_steps(steps: List[tuple[str, str]]) -> tuple[Any, int]:
    data = None
    for step, procedure in steps:
        try:
            data = store.call_rpc(procedure)
        except store.StoreError as exc:
            app.logger.exception("%s failed", procedure)
            return {"ok": False, "step": step, "error": str(exc)}, 500
    return {"ok": True, "data": data}, 200


@app.route("/api/reset/daily", methods=["GET", "POST"])
def api_reset_daily():
    body, status = run_reset_steps(
        [
            ("snapshot", "history_snapshot_rpc"),
            ("daily_reset", "daily_reset_rpc"),
        ]
    )
    body.pop("data", None)
    return jsonify(body), status


@app.route("/api/reset/weekly", methods=["GET", "POST"])
def api_reset_weekly():
    body, status = run_reset_steps([("weekly_reset", "weekly_reset_rpc")])
    return jsonify(body), status


TRACKER_CSS = """
:root {
  color-scheme: light;
  --bg: #fff6ec;
  --bg-2: #ffd7a8;
  --bg-3: #ff9f6b;
  --glass: rgba(255, 255, 255, 0.66);
  --glass-2: rgba(255, 255, 255, 0.38);
  --border: rgba(255, 255, 255, 0.55);
  --text: #2a160b;
  --muted: #7a5a44;
  --shadow: 0 24px 60px rgba(80, 30, 0, 0.18);
  --radius: 20px;
  --accent: #ff6a2b;
  --danger: #c0392b;
}

@media (prefers-color-scheme: dark) {
  :root {
    color-scheme: dark;
    --bg: #1b0f0a;
    --bg-2: #2d170d;
    --bg-3: #46210f;
    --glass: rgba(40, 22, 12, 0.66);
    --glass-2: rgba(40, 22, 12, 0.42);
    --border: rgba(255, 210, 170, 0.16);
    --text: #ffeede;
    --muted: #d1ad92;
    --shadow: 0 26px 70px rgba(0, 0, 0, 0.45);
    --accent: #ff8a52;
    --danger: #ff8c7f;
  }
}

* { box-sizing: border-box; }

body {
  margin: 0;
  font-family: "Nunito", "Segoe UI", "Helvetica Neue", sans-serif;
  color: var(--text);
  background: linear-gradient(155deg, var(--bg) 0%, var(--bg-2) 55%, var(--bg-3) 100%);
  min-height: 100vh;
}

.page {
  max-width: 1180px;
  margin: 0 auto;
  padding: 28px 20px 80px;
  display: grid;
  gap: 20px;
}

.glass-surface {
  background: linear-gradient(135deg, var(--glass), var(--glass-2));
  border: 1px solid var(--border);
  border-radius: var(--radius);
  box-shadow: var(--shadow);
  backdrop-filter: blur(22px) saturate(170%);
  -webkit-backdrop-filter: blur(22px) saturate(170%);
}

.card { padding: 22px; }

.navbar {
  max-width: 1180px;
  margin: 18px auto 0;
  padding: 14px 20px;
  display: flex;
  align-items: center;
  justify-content: space-between;
  gap: 16px;
  flex-wrap: wrap;
}

.nav-title { font-size: 20px; font-weight: 700; }
.nav-meta, .meta { font-size: 13px; color: var(--muted); }
.nav-actions { display: flex; gap: 8px; flex-wrap: wrap; }

h1, h2 { margin: 0 0 6px; letter-spacing: -0.02em; }

.section-head {
  display: flex;
  align-items: flex-end;
  justify-content: space-between;
  gap: 12px;
  flex-wrap: wrap;
  margin-bottom: 16px;
}

.btn {
  border: 1px solid var(--border);
  background: rgba(255, 255, 255, 0.7);
  padding: 9px 16px;
  border-radius: 999px;
  cursor: pointer;
  font-size: 13px;
  font-weight: 700;
  color: var(--text);
  text-decoration: none;
}

.btn.primary { background: var(--accent); color: #fff; border-color: var(--accent); }
.btn.active { outline: 2px solid var(--accent); }
.btn[disabled] { opacity: 0.6; cursor: wait; }

.pill {
  display: inline-flex;
  padding: 4px 10px;
  border-radius: 999px;
  font-size: 12px;
  font-weight: 700;
}

.pill-success { background: rgba(68, 201, 140, 0.2); color: #0f5132; }
.pill-warning { background: rgba(255, 176, 86, 0.25); color: #7a4b0b; }
.pill-danger { background: rgba(255, 99, 99, 0.22); color: #7a1010; }
.pill-muted { background: rgba(60, 30, 10, 0.08); color: var(--muted); }

.table-wrap { overflow-x: auto; border-radius: 16px; }

.table { width: 100%; border-collapse: collapse; font-size: 14px; }

.table th, .table td {
  text-align: left;
  padding: 10px 12px;
  border-bottom: 1px solid rgba(60, 30, 10, 0.08);
  white-space: nowrap;
}

.table th {
  font-size: 11px;
  letter-spacing: 0.12em;
  text-transform: uppercase;
  color: var(--muted);
}

.row-error td { background: rgba(255, 99, 99, 0.08); }

.cell-title { display: grid; gap: 4px; }
.row-error-text { color: var(--danger); font-size: 12px; white-space: normal; }

.select, .input {
  padding: 8px 10px;
  border-radius: 10px;
  border: 1px solid rgba(60, 30, 10, 0.18);
  background: rgba(255, 255, 255, 0.85);
  color: var(--text);
  font-size: 13px;
}

.select.loading { opacity: 0.6; }

.expiry.expired { color: var(--danger); font-weight: 700; }

.filters { display: flex; gap: 12px; align-items: flex-end; flex-wrap: wrap; }
.filters label { display: grid; gap: 4px; font-size: 12px; color: var(--muted); }

.error-banner { color: var(--danger); font-weight: 600; }

@media (max-width: 720px) {
  .page { padding: 20px 12px 60px; }
  .card { padding: 14px; }
  .navbar { margin: 12px 12px 0; }
}
"""


def render_status(row: EditableRow):
    if row.is_saving:
        return html.span({"class": "pill pill-warning"}, "Saving...")
    if row.last_error:
        return html.span({"class": "pill pill-danger"}, "Error")
    return html.span({"class": "pill pill-success"}, "Ready")


@component
def Dashboard():
    data, set_data = hooks.use_state(load_dashboard_data_safe)
    _version, set_version = hooks.use_state(0)
    sync_ref = hooks.use_ref(None)

    def bump() -> None:
        set_version(lambda value: value + 1)

    if sync_ref.current is None and not data.get("error"):
        sync_ref.current = StateSynchronizer(
            data["rows"],
            persist=persist_daily_state,
            actor_id=data["actor"],
            on_change=bump,
        )

    def refresh() -> None:
        fresh = load_dashboard_data_safe()
        if fresh.get("error"):
            sync_ref.current = None
        elif sync_ref.current is not None:
            sync_ref.current.actor_id = fresh["actor"]
            sync_ref.current.replace_rows(fresh["rows"])
        set_data(fresh)

    def field_change_handler(entity_id: str, field_key: str) -> Callable[[Dict[str, Any]], None]:
        def handle_change(event: Dict[str, Any]) -> None:
            synchronizer = sync_ref.current
            if synchronizer is None:
                return
            value = (event.get("target") or {}).get("value", "")
            synchronizer.submit_edit(entity_id, field_key, value)

        return handle_change

    if data.get("error"):
        return html.section(
            {"class": "card glass-surface"},
            html.h1("Dashboard unavailable"),
            html.div(
                {"class": "meta"},
                "Character progress could not be loaded. Check DATABASE_URL, TRACKER_USER_ID and database connectivity.",
            ),
            html.pre({"class": "meta", "style": {"whiteSpace": "pre-wrap"}}, data.get("error") or "Unknown error"),
            html.button({"class": "btn primary", "type": "button", "on_click": lambda e: refresh()}, "Retry"),
        )

    synchronizer = sync_ref.current
    rows = synchronizer.ordered_rows() if synchronizer is not None else []
    now = datetime.now(timezone.utc)

    def render_row(row: EditableRow):
        golden_started = row.activated_at if row.value(TIMED_FLAG_FIELD) is GoldenGoose.ACTIVE else None
        expired = is_expired(golden_started, now)
        return html.tr(
            {"key": row.entity_id, "class": "row-error" if row.last_error else ""},
            html.td(
                html.div(
                    {"class": "cell-title"},
                    html.strong(row.name),
                    *([html.span({"class": "row-error-text"}, row.last_error)] if row.last_error else []),
                )
            ),
            *[
                html.td(
                    {"key": definition.key},
                    html.select(
                        {
                            "class": f"select {'loading' if row.is_saving else ''}",
                            "aria-label": f"{row.name} {definition.label}",
                            "value": row.label(definition.key),
                            "on_change": field_change_handler(row.entity_id, definition.key),
                        },
                        *[html.option({"key": label, "value": label}, label) for label in definition.labels],
                    ),
                )
                for definition in FIELD_DEFS
            ],
            html.td({"class": f"expiry {'expired' if expired else ''}"}, expiry_label(golden_started, now)),
            html.td(render_status(row)),
        )

    saving_count = sum(1 for row in rows if row.is_saving)
    return html.section(
        {"class": "card glass-surface"},
        html.div(
            {"class": "section-head"},
            html.div(
                html.h1("Character progress"),
                html.div({"class": "meta"}, f"Dailies, weeklies and Golden Goose windows. Loaded {data['updated']}."),
            ),
            html.div(
                {"class": "nav-actions"},
                *([html.span({"class": "pill pill-warning"}, f"Syncing {saving_count}...")] if saving_count else []),
                html.button({"class": "btn", "type": "button", "on_click": lambda e: refresh()}, "Refresh"),
            ),
        ),
        html.div(
            {"class": "table-wrap"},
            html.table(
                {"class": "table"},
                html.thead(
                    html.tr(
                        html.th("Character"),
                        *[html.th({"key": definition.key}, definition.label) for definition in FIELD_DEFS],
                        html.th("Golden expiry"),
                        html.th("Status"),
                    )
                ),
                html.tbody(*[render_row(row) for row in rows]),
            ),
        )
        if rows
        else html.div({"class": "meta"}, "No characters yet."),
    )


@component
def HistoryLog():
    start, set_start = hooks.use_state(lambda: (date.today() - timedelta(days=HISTORY_DEFAULT_DAYS)).isoformat())
    end, set_end = hooks.use_state(lambda: date.today().isoformat())
    result, set_result = hooks.use_state({"rows": [], "columns": [], "error": "", "loading": True})

    @hooks.use_effect(dependencies=[start, end])
    async def load_rows() -> None:
        set_result({**(await load_history_async(start, end)), "loading": False})

    try:
        DateRange.from_params(start, end).validate()
        export_ready = True
    except ValidationError:
        export_ready = False

    rows = result["rows"]
    columns = result["columns"]
    if result.get("loading"):
        body = html.p({"class": "meta"}, "Loading history...")
    elif not rows:
        body = html.p({"class": "meta"}, "No entries in this range.")
    else:
        body = html.div(
            {"class": "table-wrap"},
            html.table(
                {"class": "table"},
                html.thead(html.tr(*[html.th({"key": column}, column_label(column)) for column in columns])),
                html.tbody(
                    *[
                        html.tr(
                            {"key": row.get("id", index)},
                            *[html.td({"key": column}, format_cell_value(column, row.get(column))) for column in columns],
                        )
                        for index, row in enumerate(rows)
                    ]
                ),
            ),
        )

    export_control = (
        html.a(
            {
                "class": "btn primary",
                "href": export_href(start, end),
                "download": export_filename(DateRange.from_params(start, end)),
            },
            "Export CSV",
        )
        if export_ready
        else html.button({"class": "btn primary", "type": "button", "disabled": True}, "Export CSV")
    )

    return html.section(
        {"class": "card glass-surface"},
        html.div(
            {"class": "section-head"},
            html.div(
                html.h1("History log"),
                html.div({"class": "meta"}, "Pick a date range to review character activity."),
            ),
            html.div(
                {"class": "filters"},
                html.label(
                    html.span("From"),
                    html.input(
                        {
                            "class": "input",
                            "type": "date",
                            "value": start,
                            "on_change": lambda event: set_start((event.get("target") or {}).get("value", "")),
                        }
                    ),
                ),
                html.label(
                    html.span("To"),
                    html.input(
                        {
                            "class": "input",
                            "type": "date",
                            "value": end,
                            "on_change": lambda event: set_end((event.get("target") or {}).get("value", "")),
                        }
                    ),
                ),
                export_control,
            ),
        ),
        *([html.p({"class": "error-banner"}, result["error"])] if result.get("error") else []),
        body,
    )


@component
def App():
    view, set_view = hooks.use_state("dashboard")

    def nav_button(key: str, label: str):
        return html.button(
            {
                "class": f"btn {'active' if view == key else ''}",
                "type": "button",
                "on_click": lambda e: set_view(key),
            },
            label,
        )

    return html.div(
        {"id": "tracker-root"},
        html.style(TRACKER_CSS),
        html.header(
            {"class": "navbar glass-surface"},
            html.div(
                html.div({"class": "nav-title"}, "DoomDye"),
                html.div({"class": "nav-meta"}, "Dragon Nest character progress tracker"),
            ),
            html.div(
                {"class": "nav-actions"},
                nav_button("dashboard", "Dashboard"),
                nav_button("history", "History log"),
            ),
        ),
        html.main(
            {"class": "page"},
            Dashboard(key="dashboard") if view == "dashboard" else HistoryLog(key="history"),
        ),
    )


store.maybe_init_db_on_startup()

configure(
    app,
    App,
    Options(
        head=(
            {"tagName": "title", "children": ["DoomDye Tracker"]},
            {
                "tagName": "meta",
                "attributes": {"name": "viewport", "content": "width=device-width, initial-scale=1"},
            },
        )
    ),
)


if __name__ == "__main__":
    app.run(
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "5000")),
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
    )
