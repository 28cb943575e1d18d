from pageforge.services import tracking

PAGE = (
    "<!DOCTYPE html><html><head><title>Launch</title></head><body>"
    "<h1>Hello</h1><form><input name=\"email\"></form></body></html>"
)


def _create(api_client, **fields):
    return api_client.post("/documents", json={"name": "Launch", "htmlContent": PAGE, **fields}).json()


def test_serves_page_with_tracking(api_client):
    doc = _create(api_client, slug="spring")

    resp = api_client.get("/p/spring")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/html")
    assert "<h1>Hello</h1>" in resp.text
    assert "pageforge-tracking" in resp.text
    assert doc["id"] in resp.text
    assert "pageforge-live-edit" not in resp.text
    assert resp.headers["x-robots-tag"] == "noindex, nofollow"


def test_edit_mode_injects_widget(api_client):
    doc = _create(api_client, slug="spring")
    api_client.patch(f"/documents/{doc['id']}", json={"status": "published"})

    plain = api_client.get("/p/spring")
    editing = api_client.get("/p/spring", params={"edit": "1"})

    assert "x-robots-tag" not in plain.headers
    assert "pageforge-live-edit" in editing.text
    assert f"/documents/' + encodeURIComponent(docId) + '/changes" in editing.text
    assert editing.text.index("pageforge-live-edit") < editing.text.lower().rindex("</body>")


def test_missing_page_is_html_404(api_client):
    resp = api_client.get("/p/missing-page")

    assert resp.status_code == 404
    assert "text/html" in resp.headers["content-type"]
    assert "/p/missing-page" in resp.text


def test_events_are_recorded_and_counted(api_client, store):
    doc = _create(api_client, slug="spring")

    track = api_client.post(
        f"/public/track/{doc['id']}",
        json={"sessionId": "s1", "deviceType": "mobile", "utm": {"utm_source": "newsletter"}},
    )
    by_slug = api_client.post("/public/track/spring", json={"sessionId": "s2", "deviceType": "desktop"})
    submit = api_client.post(f"/public/submit/{doc['id']}", json={"formData": {"email": "a@b.test"}})
    convert = api_client.post(f"/public/convert/{doc['id']}", json={"value": 49.0})

    assert [r.json() for r in (track, by_slug, submit, convert)] == [{"ok": True}] * 4
    current = api_client.get(f"/documents/{doc['id']}").json()
    assert current["views"] == 2
    assert current["leads"] == 1

    events = tracking.page_events(store, doc["id"])
    assert events["leads"][0]["formData"] == {"email": "a@b.test"}
    assert events["conversions"][0]["value"] == 49.0

    analytics = api_client.get(f"/documents/{doc['id']}/analytics").json()
    assert analytics["views"] == 2
    assert analytics["conversions"] == 1
    assert {"deviceType": "mobile", "count": 1} in analytics["deviceBreakdown"]
    assert analytics["topSources"] == [{"utmSource": "newsletter", "count": 1}]


def test_public_endpoints_never_error(api_client):
    unknown_page = api_client.post("/public/track/pg_missing", json={})
    bad_body = api_client.post(
        "/public/track/pg_missing", content=b"not json", headers={"Content-Type": "application/json"}
    )
    bad_kind = api_client.post("/public/explode/pg_missing")

    for resp in (unknown_page, bad_body, bad_kind):
        assert resp.status_code == 200
        assert resp.json()["ok"] is False


def test_malformed_fields_still_count_the_view(api_client):
    doc = _create(api_client, slug="spring")

    resp = api_client.post(f"/public/track/{doc['id']}", json={"utm": "not-a-dict"})

    assert resp.json() == {"ok": True}
    assert api_client.get(f"/documents/{doc['id']}").json()["views"] == 1


def test_injection_is_idempotent():
    once = tracking.inject_tracking(PAGE, "pg_1")
    twice = tracking.inject_tracking(once, "pg_1")

    assert once == twice
    assert once.count("pageforge-tracking") == 1
    assert once.rstrip().endswith("</html>")


def test_leads_listing_and_csv_export(api_client):
    spring = _create(api_client, slug="spring")
    autumn = _create(api_client, name="Autumn", slug="autumn")
    api_client.post(
        f"/public/submit/{spring['id']}",
        json={"formData": {"name": "Ada", "email": "ada@example.test"}, "utm": {"utm_source": "newsletter"}},
    )
    api_client.post(f"/public/submit/{autumn['id']}", json={"formData": {"email": "bob@example.test"}})

    leads = api_client.get("/leads").json()
    only_spring = api_client.get("/leads", params={"pageId": spring["id"]}).json()
    export = api_client.get("/leads/export")

    assert {lead["email"] for lead in leads} == {"ada@example.test", "bob@example.test"}
    assert [lead["name"] for lead in only_spring] == ["Ada"]
    assert only_spring[0]["pageName"] == "Launch"
    assert only_spring[0]["source"] == "newsletter"
    assert export.headers["content-type"].startswith("text/csv")
    assert "attachment" in export.headers["content-disposition"]
    rows = export.text.splitlines()
    assert rows[0] == "Name,Email,Phone,Page,Source,Date"
    assert len(rows) == 3
    assert any(row.startswith("Ada,ada@example.test,,Launch,newsletter,") for row in rows)


def test_dashboard_stats_totals(api_client):
    empty = api_client.get("/stats").json()
    doc = _create(api_client, slug="spring")
    _create(api_client, name="Autumn", slug="autumn")
    api_client.patch(f"/documents/{doc['id']}", json={"status": "published"})
    for session in ("s1", "s2", "s3", "s4"):
        api_client.post(f"/public/track/{doc['id']}", json={"sessionId": session})
    api_client.post(f"/public/submit/{doc['id']}", json={"formData": {"email": "a@b.test"}})
    api_client.post(f"/public/convert/{doc['id']}", json={"value": 10})

    stats = api_client.get("/stats").json()

    assert empty["totalPages"] == 0
    assert empty["conversionRate"] == 0.0
    assert stats == {
        "totalPages": 2,
        "publishedPages": 1,
        "draftPages": 1,
        "totalViews": 4,
        "totalLeads": 1,
        "totalConversions": 1,
        "conversionRate": 25.0,
    }
