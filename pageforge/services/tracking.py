from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pageforge.db.enums import DocumentStatusEnum, PageEventKindEnum
from pageforge.services import documents as documents_service
from pageforge.storage.base import RecordStore, StoredRecord

logger = logging.getLogger(__name__)

PAGE_EVENTS = "page_events"

# Counter on the document bumped for each event kind.
_COUNTERS = {
    PageEventKindEnum.views.value: "views",
    PageEventKindEnum.leads.value: "leads",
}

_TRACKING_MARKER = "<!-- pageforge-tracking -->"
_EDITOR_MARKER = "<!-- pageforge-live-edit -->"


def tracking_script(page_id: str, api_base_url: str = "") -> str:
    page = json.dumps(page_id)
    base = json.dumps(api_base_url.rstrip("/"))
    return f"""{_TRACKING_MARKER}
<script>
(function() {{
  var pageId = {page};
  var apiBase = {base};
  var sid = null;
  try {{
    sid = sessionStorage.getItem('pf_sid');
    if (!sid) {{
      sid = 'pf_' + Math.random().toString(36).substr(2, 9) + Date.now().toString(36);
      sessionStorage.setItem('pf_sid', sid);
    }}
  }} catch (e) {{
    sid = 'pf_' + Math.random().toString(36).substr(2, 9);
  }}
  var params = new URLSearchParams(window.location.search);
  var utm = {{}};
  ['utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content'].forEach(function(key) {{
    if (params.get(key)) utm[key] = params.get(key);
  }});
  var ua = navigator.userAgent;
  var device = /tablet|ipad/i.test(ua) ? 'tablet' : (/mobile|iphone|android/i.test(ua) ? 'mobile' : 'desktop');
  function send(kind, extra) {{
    var body = Object.assign({{ sessionId: sid, utm: utm, referrer: document.referrer || '', deviceType: device }}, extra || {{}});
    fetch(apiBase + '/public/' + kind + '/' + encodeURIComponent(pageId), {{
      method: 'POST',
      headers: {{ 'Content-Type': 'application/json' }},
      body: JSON.stringify(body),
      keepalive: true
    }}).catch(function() {{}});
  }}
  send('track');
  document.addEventListener('submit', function(e) {{
    var formData = {{}};
    new FormData(e.target).forEach(function(value, key) {{ formData[key] = value; }});
    send('submit', {{ formData: formData }});
  }});
  window.pageforgeConvert = function(value) {{ send('convert', {{ value: value }}); }};
}})();
</script>"""


def live_edit_widget(document_id: str, api_base_url: str = "") -> str:
    doc = json.dumps(document_id)
    base = json.dumps(api_base_url.rstrip("/"))
    return f"""{_EDITOR_MARKER}
<div id="pf-live-edit" style="position:fixed;right:16px;bottom:16px;z-index:2147483647;width:320px;font:14px system-ui,sans-serif;background:#111827;color:#f9fafb;border-radius:12px;box-shadow:0 10px 30px rgba(0,0,0,.35);padding:12px;">
  <div style="font-weight:600;margin-bottom:8px;">Edit this page</div>
  <textarea id="pf-live-edit-input" rows="3" style="width:100%;box-sizing:border-box;border-radius:8px;border:0;padding:8px;color:#111827;" placeholder="e.g. change the headline to Save 50% today"></textarea>
  <button id="pf-live-edit-send" style="margin-top:8px;width:100%;padding:8px;border:0;border-radius:8px;background:#6366f1;color:#fff;font-weight:600;cursor:pointer;">Apply change</button>
  <div id="pf-live-edit-status" style="margin-top:8px;min-height:18px;color:#d1d5db;"></div>
</div>
<script>
(function() {{
  var docId = {doc};
  var apiBase = {base};
  var input = document.getElementById('pf-live-edit-input');
  var button = document.getElementById('pf-live-edit-send');
  var status = document.getElementById('pf-live-edit-status');
  button.addEventListener('click', function() {{
    var instruction = (input.value || '').trim();
    if (!instruction) return;
    button.disabled = true;
    status.textContent = 'Applying...';
    fetch(apiBase + '/documents/' + encodeURIComponent(docId) + '/changes', {{
      method: 'POST',
      headers: {{ 'Content-Type': 'application/json' }},
      body: JSON.stringify({{ instruction: instruction }})
    }}).then(function(resp) {{
      return resp.json().then(function(data) {{ return {{ ok: resp.ok, data: data }}; }});
    }}).then(function(result) {{
      if (result.ok && result.data.success) {{
        status.textContent = result.data.summary || 'Updated.';
        window.location.reload();
      }} else {{
        status.textContent = (result.data && (result.data.summary || result.data.detail || result.data.error)) || 'Could not apply the change.';
      }}
    }}).catch(function() {{
      status.textContent = 'Network error. Try again.';
    }}).then(function() {{
      button.disabled = false;
    }});
  }});
}})();
</script>"""


def _inject_before_body_end(html: str, snippet: str) -> str:
    lower = html.lower()
    index = lower.rfind("</body>")
    if index == -1:
        return html + "\n" + snippet
    return html[:index] + snippet + "\n" + html[index:]


def inject_tracking(html: str, page_id: str, api_base_url: str = "") -> str:
    if _TRACKING_MARKER in html:
        return html
    return _inject_before_body_end(html, tracking_script(page_id, api_base_url))


def inject_live_edit(html: str, document_id: str, api_base_url: str = "") -> str:
    if _EDITOR_MARKER in html:
        return html
    return _inject_before_body_end(html, live_edit_widget(document_id, api_base_url))


def resolve_document(store: RecordStore, page_ref: str) -> Optional[StoredRecord]:
    record = store.get(documents_service.DOCUMENTS, page_ref)
    if record is not None:
        return record
    return documents_service.get_document_by_slug(store, page_ref)


def record_event(store: RecordStore, page_ref: str, kind: str, payload: dict[str, Any]) -> Optional[str]:
    """
    Append an engagement event for a page and bump its counter.

    Returns the resolved document id, or None when no such page exists.
    """

    kind = PageEventKindEnum(kind).value
    document = resolve_document(store, page_ref)
    if document is None:
        logger.info("tracking.unknown_page", extra={"page_ref": page_ref, "kind": kind})
        return None

    event = {**payload, "recorded_at": datetime.now(timezone.utc).isoformat()}
    store.append(PAGE_EVENTS, document.id, kind, event)
    counter = _COUNTERS.get(kind)
    if counter:
        documents_service.increment_counter(store, document.id, counter)
    logger.info("tracking.event_recorded", extra={"document_id": document.id, "kind": kind})
    return document.id


def page_events(store: RecordStore, document_id: str) -> dict[str, list[dict[str, Any]]]:
    record = store.get(PAGE_EVENTS, document_id)
    data = record.data if record is not None else {}
    return {kind.value: list(data.get(kind.value) or []) for kind in PageEventKindEnum}


def page_analytics(store: RecordStore, document_id: str) -> dict[str, Any]:
    """Totals plus device and utm_source breakdowns over the recorded views."""

    events = page_events(store, document_id)
    views = events[PageEventKindEnum.views.value]
    devices: dict[str, int] = {}
    sources: dict[str, int] = {}
    for view in views:
        device = view.get("deviceType") or "unknown"
        devices[device] = devices.get(device, 0) + 1
        source = (view.get("utm") or {}).get("utm_source")
        if source:
            sources[source] = sources.get(source, 0) + 1
    top_sources = sorted(sources.items(), key=lambda item: item[1], reverse=True)[:10]
    return {
        "views": len(views),
        "leads": len(events[PageEventKindEnum.leads.value]),
        "conversions": len(events[PageEventKindEnum.conversions.value]),
        "deviceBreakdown": [{"deviceType": key, "count": count} for key, count in devices.items()],
        "topSources": [{"utmSource": key, "count": count} for key, count in top_sources],
    }


LEAD_CSV_HEADER = ("Name", "Email", "Phone", "Page", "Source", "Date")
_LEAD_CSV_FIELDS = ("name", "email", "phone", "pageName", "source", "createdAt")


def list_leads(store: RecordStore, *, document_id: Optional[str] = None) -> list[dict[str, Any]]:
    """Submitted leads across every page, newest first."""

    page_names = {record.id: record.data.get("name") for record in store.list_records(documents_service.DOCUMENTS)}
    leads: list[dict[str, Any]] = []
    for record in store.list_records(PAGE_EVENTS):
        if document_id is not None and record.id != document_id:
            continue
        for event in record.data.get(PageEventKindEnum.leads.value) or []:
            form = event.get("formData") if isinstance(event.get("formData"), dict) else {}
            utm = event.get("utm") if isinstance(event.get("utm"), dict) else {}
            leads.append(
                {
                    "pageId": record.id,
                    "pageName": page_names.get(record.id),
                    "name": form.get("name"),
                    "email": form.get("email"),
                    "phone": form.get("phone"),
                    "source": utm.get("utm_source") or event.get("referrer"),
                    "formData": form,
                    "sessionId": event.get("sessionId"),
                    "createdAt": event.get("recorded_at"),
                }
            )
    leads.sort(key=lambda lead: lead["createdAt"] or "", reverse=True)
    return leads


def leads_csv(leads: list[dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(LEAD_CSV_HEADER)
    for lead in leads:
        writer.writerow([lead.get(field) or "" for field in _LEAD_CSV_FIELDS])
    return buffer.getvalue()


def dashboard_stats(store: RecordStore) -> dict[str, Any]:
    documents = store.list_records(documents_service.DOCUMENTS)
    published = sum(1 for record in documents if record.data.get("status") == DocumentStatusEnum.published.value)
    views = sum(int(record.data.get("views") or 0) for record in documents)
    leads = sum(int(record.data.get("leads") or 0) for record in documents)
    conversions = sum(
        len(record.data.get(PageEventKindEnum.conversions.value) or [])
        for record in store.list_records(PAGE_EVENTS)
    )
    return {
        "totalPages": len(documents),
        "publishedPages": published,
        "draftPages": len(documents) - published,
        "totalViews": views,
        "totalLeads": leads,
        "totalConversions": conversions,
        "conversionRate": round(leads / views * 100, 1) if views else 0.0,
    }
