import io
from pathlib import Path

from app.ombro.db import session_scope
from app.ombro.models import AuditLog
from app.ombro.modules.requests.models import AssistanceRequest, Comment, Invoice


def _new_request_form(csrf_token, **overrides):
    data = {
        "csrf_token": csrf_token,
        "requester_name": "Ana Souza",
        "cpf": "12345678901",
        "type": "psicológico",
        "polo": "3M Sumaré",
        "description": "Terapia",
        "dependents-0-name": "Pedro",
        "dependents-0-relationship": "filho(a)",
        "dependents-1-name": "",
        "dependents-1-relationship": "",
        "invoices-0-value": "150,00",
        "invoices-0-beneficiary": "Clínica Viver",
        "invoices-0-sessions": "4",
        "invoices-0-description": "Sessões de março",
        "invoices-0-file": (io.BytesIO(b"%PDF-1.4 nota"), "nota-marco.pdf"),
        "invoices-1-value": "",
        "invoices-1-beneficiary": "",
        "invoices-1-sessions": "",
        "invoices-1-description": "",
        "attachments": (io.BytesIO(b"\x89PNG receita"), "receita.png"),
    }
    data.update(overrides)
    return data


def test_solicitante_creates_request_with_files(app, client, make_user, login, csrf):
    uid = make_user("ana@example.com", name="Ana", polo="3M Sumaré")
    login(client, "ana@example.com")
    client.get("/solicitante/")

    r = client.post(
        "/solicitante/requests/new",
        data=_new_request_form(csrf(client)),
        content_type="multipart/form-data",
    )
    assert r.status_code == 302

    with session_scope(app) as s:
        req = s.query(AssistanceRequest).one()
        assert req.user_id == uid
        assert req.status == "pending"
        assert str(req.amount) == "150.00"
        assert req.dependents == [{"name": "Pedro", "relationship": "filho(a)"}]
        assert len(req.invoices) == 1
        assert req.invoices[0]["fileName"] == "nota-marco.pdf"
        assert req.invoices[0]["sessions"] == 4
        assert len(req.attachments) == 1
        assert req.attachments[0].startswith(f"{uid}/")

        inv = s.query(Invoice).one()
        assert inv.file_name == "nota-marco.pdf"
        assert req.invoices[0]["fileId"] == inv.id
        assert inv.file_url.startswith(f"{uid}/")
        root = Path(app.config["STORAGE_LOCAL_ROOT"])
        assert (root / "invoices" / inv.file_url).read_bytes() == b"%PDF-1.4 nota"
        assert (root / "request-attachments" / req.attachments[0]).exists()

        assert s.query(AuditLog).filter(AuditLog.action == "request.create").count() == 1


def test_invalid_request_flashes_errors(app, client, make_user, login, csrf):
    make_user("ana@example.com")
    login(client, "ana@example.com")
    client.get("/solicitante/")

    form = _new_request_form(csrf(client), cpf="", polo="")
    r = client.post("/solicitante/requests/new", data=form, content_type="multipart/form-data", follow_redirects=True)
    assert r.status_code == 200
    assert "CPF é obrigatório".encode() in r.data
    assert "Polo é obrigatório".encode() in r.data
    with session_scope(app) as s:
        assert s.query(AssistanceRequest).count() == 0


def test_nan_invoice_value_flashes_error(app, client, make_user, login, csrf):
    make_user("ana@example.com")
    login(client, "ana@example.com")
    client.get("/solicitante/")

    form = _new_request_form(csrf(client), **{"invoices-0-value": "NaN"})
    r = client.post("/solicitante/requests/new", data=form, content_type="multipart/form-data")
    assert r.status_code == 302

    r = client.get(r.headers["Location"])
    assert "Informe um valor válido para a nota fiscal".encode() in r.data
    with session_scope(app) as s:
        assert s.query(AssistanceRequest).count() == 0


def test_request_without_invoices_is_refused(app, client, make_user, login, csrf):
    make_user("ana@example.com")
    login(client, "ana@example.com")
    client.get("/solicitante/")

    form = _new_request_form(
        csrf(client),
        **{
            "invoices-0-value": "",
            "invoices-0-beneficiary": "",
            "invoices-0-sessions": "",
            "invoices-0-description": "",
        },
    )
    form.pop("invoices-0-file")
    r = client.post("/solicitante/requests/new", data=form, content_type="multipart/form-data", follow_redirects=True)
    assert "Adicione pelo menos uma nota fiscal".encode() in r.data


def test_solicitante_sees_only_own_requests(client, make_user, make_request, login):
    a = make_user("a@example.com")
    b = make_user("b@example.com")
    make_request(a, requester_name="Pedido Da Ana")
    other = make_request(b, requester_name="Pedido Do Bruno")

    login(client, "a@example.com")
    r = client.get("/solicitante/")
    assert r.status_code == 200

    r = client.get(f"/requests/{other}")
    assert r.status_code == 404


def test_gestora_without_polo_is_asked_to_configure(client, make_user, login):
    make_user("g@example.com", role="gestora")
    login(client, "g@example.com")
    r = client.get("/gestora/")
    assert r.status_code == 200
    assert "Configure seu polo".encode() in r.data


def test_gestora_dashboard_scoped_and_searchable(client, make_user, make_request, login):
    sol = make_user("s@example.com")
    make_user("g@example.com", role="gestora", polo="3M Sumaré", grants=("3M Manaus",))
    make_request(sol, polo="3M Sumaré", requester_name="Carla Dias", cpf="11111111111")
    make_request(sol, polo="3M Manaus", requester_name="Bruno Reis", cpf="22222222222")
    make_request(sol, polo="3M Itapetininga", requester_name="Fora Do Escopo")

    login(client, "g@example.com")
    r = client.get("/gestora/")
    assert b"Carla Dias" in r.data
    assert b"Bruno Reis" in r.data
    assert b"Fora Do Escopo" not in r.data

    r = client.get("/gestora/?q=2222")
    assert b"Bruno Reis" in r.data
    assert b"Carla Dias" not in r.data


def test_gestora_cannot_open_other_polo(client, make_user, make_request, login):
    sol = make_user("s@example.com")
    make_user("g@example.com", role="gestora", polo="3M Sumaré")
    rid = make_request(sol, polo="3M Manaus")
    login(client, "g@example.com")
    assert client.get(f"/requests/{rid}").status_code == 404


def test_gestora_approves(app, client, make_user, make_request, login, csrf):
    sol = make_user("s@example.com")
    ges = make_user("g@example.com", role="gestora", polo="3M Sumaré")
    rid = make_request(sol)

    login(client, "g@example.com")
    r = client.get(f"/requests/{rid}")
    assert r.status_code == 200
    assert "Aprovar".encode() in r.data

    r = client.post(f"/requests/{rid}/approve", data={"csrf_token": csrf(client)})
    assert r.status_code == 302
    with session_scope(app) as s:
        req = s.get(AssistanceRequest, rid)
        assert req.status == "approved"
        assert req.approved_by == ges
        assert req.approved_at is not None


def test_reject_requires_reason(app, client, make_user, make_request, login, csrf):
    sol = make_user("s@example.com")
    make_user("g@example.com", role="gestora", polo="3M Sumaré")
    rid = make_request(sol)
    login(client, "g@example.com")

    r = client.post(f"/requests/{rid}/reject", data={"csrf_token": csrf(client), "rejection_reason": "  "}, follow_redirects=True)
    assert "Motivo obrigatório".encode() in r.data
    with session_scope(app) as s:
        assert s.get(AssistanceRequest, rid).status == "pending"

    r = client.post(f"/requests/{rid}/reject", data={"csrf_token": csrf(client), "rejection_reason": "Nota fiscal ilegível"})
    assert r.status_code == 302
    with session_scope(app) as s:
        req = s.get(AssistanceRequest, rid)
        assert req.status == "rejected"
        assert req.rejection_reason == "Nota fiscal ilegível"


def test_solicitante_cannot_review(client, make_user, make_request, login, csrf):
    sol = make_user("s@example.com")
    rid = make_request(sol)
    login(client, "s@example.com")
    client.get("/solicitante/")
    r = client.post(f"/requests/{rid}/approve", data={"csrf_token": csrf(client)})
    assert r.status_code == 403


def test_comment_is_added(app, client, make_user, make_request, login, csrf):
    sol = make_user("s@example.com")
    rid = make_request(sol)
    login(client, "s@example.com")
    client.get("/solicitante/")

    r = client.post(f"/requests/{rid}/comments", data={"csrf_token": csrf(client), "content": "Enviei a nota atualizada"}, follow_redirects=True)
    assert r.status_code == 200
    assert "Enviei a nota atualizada".encode() in r.data
    with session_scope(app) as s:
        c = s.query(Comment).one()
        assert c.user_id == sol


def test_invoice_download_and_delete(app, client, make_user, login, csrf):
    make_user("ana@example.com", polo="3M Sumaré")
    login(client, "ana@example.com")
    client.get("/solicitante/")
    client.post("/solicitante/requests/new", data=_new_request_form(csrf(client)), content_type="multipart/form-data")

    with session_scope(app) as s:
        req = s.query(AssistanceRequest).one()
        inv = s.query(Invoice).one()
        rid, inv_id, key = req.id, inv.id, inv.file_url

    r = client.get(f"/requests/{rid}/invoices/{inv_id}/download")
    assert r.status_code == 200
    assert r.data == b"%PDF-1.4 nota"
    assert "attachment" in r.headers["Content-Disposition"]

    r = client.get(f"/requests/{rid}/attachments/0/view")
    assert r.status_code == 200
    assert r.data == b"\x89PNG receita"
    assert client.get(f"/requests/{rid}/attachments/5/view").status_code == 404

    r = client.post(f"/requests/{rid}/invoices/{inv_id}/delete", data={"csrf_token": csrf(client)})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Invoice, inv_id) is None
    assert not (Path(app.config["STORAGE_LOCAL_ROOT"]) / "invoices" / key).exists()


def test_same_named_invoice_files_stay_with_their_lines(app, client, make_user, login, csrf):
    make_user("ana@example.com", polo="3M Sumaré")
    login(client, "ana@example.com")
    client.get("/solicitante/")

    form = _new_request_form(
        csrf(client),
        **{
            "invoices-0-file": (io.BytesIO(b"\xff\xd8 primeira"), "image.jpg"),
            "invoices-1-value": "90,00",
            "invoices-1-beneficiary": "Clínica Sol",
            "invoices-1-sessions": "2",
            "invoices-1-description": "Sessões de abril",
            "invoices-1-file": (io.BytesIO(b"\xff\xd8 segunda"), "image.jpg"),
        },
    )
    r = client.post("/solicitante/requests/new", data=form, content_type="multipart/form-data")
    assert r.status_code == 302

    root = Path(app.config["STORAGE_LOCAL_ROOT"]) / "invoices"
    with session_scope(app) as s:
        req = s.query(AssistanceRequest).one()
        rid = req.id
        file_ids = [line["fileId"] for line in req.invoices]
        assert len(set(file_ids)) == 2
        assert sorted(file_ids) == sorted(inv.id for inv in s.query(Invoice).all())
        contents = [(root / s.get(Invoice, fid).file_url).read_bytes() for fid in file_ids]
    assert contents == [b"\xff\xd8 primeira", b"\xff\xd8 segunda"]

    page = client.get(f"/requests/{rid}").data.decode("utf-8")
    for fid in file_ids:
        assert f"/requests/{rid}/invoices/{fid}/view" in page


def test_changes_endpoint_reports_new_version(client, make_user, make_request, login):
    sol = make_user("s@example.com")
    login(client, "s@example.com")
    v1 = client.get("/requests/changes").json["version"]
    make_request(sol)
    v2 = client.get("/requests/changes").json["version"]
    assert v1 != v2
