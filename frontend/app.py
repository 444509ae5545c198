from __future__ import annotations

import html
import secrets
from dataclasses import dataclass, field
from datetime import date
from email.parser import BytesParser
from email.policy import default
from http import HTTPStatus
from http.cookies import SimpleCookie
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional
from urllib.parse import parse_qs, quote, urlencode, urlparse

from backend.app.app import CarReportApp
from backend.app.config import Settings, get_settings
from backend.app.errors import AuthenticationError, PhotoRejectedError, ValidationError
from backend.app.filters import Page, ReportFilter
from backend.app.forms import USER_FORM, VEHICLE_FORM, FieldType, FormField
from backend.app.logger import get_logger
from backend.app.models import REQUIRED_PHOTO_SLOTS, PhotoSlot, User, UserRole, Vehicle, VehicleReport
from backend.app.photos import MAX_PHOTO_BYTES, UploadedFile
from backend.app.reports import ReportSubmission, list_concessions
from backend.app.storage import PhotoStorage

SESSION_COOKIE = "session_id"
FLASH_COOKIE = "flash_id"
FLASH_COOKIE_SECONDS = 5 * 60

STYLES = """
body { font-family: system-ui, sans-serif; margin: 0; background: #f3f4f6; color: #1f2937; }
.top-bar { display: flex; justify-content: space-between; align-items: center; padding: 0.75rem 1.5rem; background: #1d4ed8; color: #fff; }
.top-bar a { color: #fff; margin-left: 1rem; text-decoration: none; }
.content { max-width: 1100px; margin: 1.5rem auto; padding: 0 1rem; }
.card { background: #fff; border-radius: 8px; padding: 1.25rem; margin-bottom: 1.25rem; box-shadow: 0 1px 3px rgba(0,0,0,.08); }
.card.narrow { max-width: 420px; margin: 2rem auto; }
.form label { display: block; margin-top: 0.75rem; font-weight: 600; }
.form input, .form select, .form textarea { width: 100%; padding: 0.5rem; box-sizing: border-box; }
.flash-messages { list-style: none; padding: 0; }
.flash { padding: 0.75rem 1rem; border-radius: 6px; margin-bottom: 0.5rem; }
.flash.error { background: #fef2f2; color: #991b1b; }
.flash.success { background: #ecfdf5; color: #065f46; }
.flash.info { background: #eff6ff; color: #1e40af; }
table { width: 100%; border-collapse: collapse; }
th, td { text-align: left; padding: 0.5rem; border-bottom: 1px solid #e5e7eb; }
.muted { color: #6b7280; }
.photo-grid { display: grid; grid-template-columns: repeat(auto-fill, minmax(180px, 1fr)); gap: 1rem; list-style: none; padding: 0; }
.photo-grid img { width: 100%; border-radius: 6px; }
.photo-slot.missing { border: 2px dashed #f87171; padding: 0.5rem; border-radius: 6px; }
.badge { display: inline-block; padding: 0.1rem 0.5rem; border-radius: 999px; background: #e5e7eb; font-size: 0.8rem; }
.badge.inactive { background: #fee2e2; color: #991b1b; }
.pagination { display: flex; gap: 1rem; align-items: center; margin-top: 1rem; }
.inline-form { display: inline; }
"""

logger = get_logger(__name__)


@dataclass
class Request:
    method: str
    target: str
    headers: dict[str, str]
    body: bytes = b""

    def __post_init__(self) -> None:
        parsed = urlparse(self.target)
        self.path = parsed.path or "/"
        self.query = parse_qs(parsed.query)
        self.form: dict[str, list[str]] = {}
        self.files: dict[str, list[UploadedFile]] = {}
        if self.method in {"POST", "PUT"}:
            content_type = self.headers.get("Content-Type", "")
            if "application/x-www-form-urlencoded" in content_type:
                self.form = parse_qs(self.body.decode("utf-8"), keep_blank_values=True)
            elif "multipart/form-data" in content_type:
                self._parse_multipart(content_type)
        cookie_header = self.headers.get("Cookie", "")
        cookie = SimpleCookie(cookie_header)
        self.cookies = {key: morsel.value for key, morsel in cookie.items()}
        self.issued_flash_key: Optional[str] = None

    def form_value(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.form.get(name)
        return values[0] if values else default

    def form_values(self, name: str) -> list[str]:
        return self.form.get(name, [])

    def query_value(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.query.get(name)
        return values[0] if values else default

    def file_values(self, name: str) -> list[UploadedFile]:
        return self.files.get(name, [])

    def _parse_multipart(self, content_type: str) -> None:
        message = BytesParser(policy=default).parsebytes(
            f"Content-Type: {content_type}\r\n\r\n".encode("utf-8") + self.body
        )
        for part in message.iter_parts():
            if part.get_content_disposition() != "form-data":
                continue
            name = part.get_param("name", header="Content-Disposition")
            if not name:
                continue
            filename = part.get_param("filename", header="Content-Disposition")
            payload = part.get_payload(decode=True) or b""
            if filename:
                upload = UploadedFile(
                    filename=filename,
                    content_type=part.get_content_type(),
                    data=payload,
                )
                self.files.setdefault(name, []).append(upload)
            elif filename is None:
                charset = part.get_content_charset("utf-8") or "utf-8"
                value = payload.decode(charset)
                self.form.setdefault(name, []).append(value)

    def cookie(self, name: str) -> Optional[str]:
        return self.cookies.get(name)


@dataclass
class Response:
    status: HTTPStatus = HTTPStatus.OK
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes | str = ""

    def set_cookie(self, name: str, value: str, *, path: str = "/", max_age: Optional[int] = None) -> None:
        cookie = SimpleCookie()
        cookie[name] = value
        cookie[name]["path"] = path
        cookie[name]["httponly"] = True
        if max_age is not None:
            cookie[name]["max-age"] = str(max_age)
        header_value = cookie.output(header="")
        self.headers.append(("Set-Cookie", header_value.strip()))

    def add_header(self, name: str, value: str) -> None:
        self.headers.append((name, value))


class CarReportWebApp:
    def __init__(
        self,
        database_path: Optional[Path] = None,
        *,
        settings: Optional[Settings] = None,
        storage: Optional[PhotoStorage] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.service = CarReportApp.create(database_path, storage=storage, settings=self.settings)
        if self.settings.seed_defaults:
            self.service.seed_defaults()
        self.flash_messages: dict[str, list[tuple[str, str]]] = {}
        self.drafts: dict[str, ReportSubmission] = {}

    # Public API -----------------------------------------------------------------
    def wsgi_app(self, environ: dict[str, Any], start_response: Callable) -> Iterable[bytes]:
        method = environ["REQUEST_METHOD"]
        target = environ.get("RAW_URI") or environ.get("PATH_INFO", "/")
        if environ.get("QUERY_STRING") and "?" not in target:
            target = f"{target}?{environ['QUERY_STRING']}"
        length = int(environ.get("CONTENT_LENGTH") or 0)
        body = environ["wsgi.input"].read(length) if length else b""
        headers = {key: value for key, value in environ.items() if key.startswith("HTTP_")}
        if "CONTENT_TYPE" in environ:
            headers["Content-Type"] = environ["CONTENT_TYPE"]
        if "HTTP_COOKIE" in environ:
            headers["Cookie"] = environ["HTTP_COOKIE"]
        request = Request(method=method, target=target, headers=headers, body=body)
        response = self.handle(request)
        start_response(f"{response.status.value} {response.status.phrase}", response.headers)
        body = response.body if isinstance(response.body, bytes) else response.body.encode("utf-8")
        return [body]

    def handle(self, request: Request) -> Response:
        if request.method == "GET" and request.path.startswith("/uploads/"):
            return self._serve_upload(request, request.path.split("/", 2)[-1])
        if request.method == "GET" and request.path.startswith("/previews/"):
            return self._serve_preview(request, request.path.split("/", 2)[-1])

        route = self._match_route(request)
        if not route:
            return self._not_found()
        handler, params = route
        response = handler(request, **params)
        if not any(name.lower() == "content-type" for name, _ in response.headers):
            response.add_header("Content-Type", "text/html; charset=utf-8")
        if not (300 <= response.status.value < 400) and isinstance(response.body, str):
            messages = self._consume_messages(request)
            if messages:
                response.body = response.body.replace("<!--FLASH-->", self._render_messages(messages))
            else:
                response.body = response.body.replace("<!--FLASH-->", "")
        if request.issued_flash_key and request.issued_flash_key in self.flash_messages:
            response.set_cookie(FLASH_COOKIE, request.issued_flash_key, path="/", max_age=FLASH_COOKIE_SECONDS)
        return response

    def run(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        from wsgiref.simple_server import make_server

        host = host or self.settings.host
        port = port or self.settings.port
        with make_server(host, port, self.wsgi_app) as httpd:
            logger.info("Serving on http://%s:%s", host, port)
            httpd.serve_forever()

    # Routing --------------------------------------------------------------------
    def _match_route(self, request: Request) -> Optional[tuple[Callable, dict[str, Any]]]:
        simple_routes: dict[tuple[str, str], Callable[[Request], Response]] = {
            ("GET", "/"): self._home,
            ("GET", "/login"): self._login_get,
            ("POST", "/login"): self._login_post,
            ("GET", "/logout"): self._logout,
            ("GET", "/fahrer"): self._driver_get,
            ("POST", "/fahrer"): self._driver_post,
            ("GET", "/fahrer/historie"): self._driver_history,
            ("GET", "/admin"): self._admin_reports,
            ("GET", "/admin/export"): self._admin_export,
            ("GET", "/admin/users"): self._users_get,
            ("POST", "/admin/users"): self._users_post,
            ("GET", "/admin/vehicles"): self._vehicles_get,
            ("POST", "/admin/vehicles"): self._vehicles_post,
        }
        handler = simple_routes.get((request.method, request.path))
        if handler:
            return handler, {}

        parts = request.path.strip("/").split("/")
        if parts[0] == "fahrer" and len(parts) == 3:
            if parts[1] == "report" and request.method == "GET":
                return self._driver_report, {"report_id": parts[2]}
            if parts[1] == "favoriten" and request.method == "POST":
                return self._toggle_favorite, {"vehicle_id": parts[2]}
        if parts[0] == "admin" and len(parts) >= 3 and parts[1] == "report" and request.method == "GET":
            if len(parts) == 3:
                return self._admin_report, {"report_id": parts[2]}
            if len(parts) == 4 and parts[3] == "fotos":
                return self._admin_photo_archive, {"report_id": parts[2]}
            if len(parts) == 5 and parts[3] == "fotos":
                return self._admin_photo_download, {"report_id": parts[2], "photo_id": parts[4]}
        if parts[0] == "admin" and len(parts) in {3, 4} and parts[1] in {"users", "vehicles"}:
            users = parts[1] == "users"
            if len(parts) == 3:
                if request.method == "GET":
                    return (self._user_edit_get if users else self._vehicle_edit_get), {"entity_id": parts[2]}
                if request.method == "POST":
                    return (self._user_edit_post if users else self._vehicle_edit_post), {"entity_id": parts[2]}
            elif request.method == "POST" and parts[3] == "toggle":
                return (self._user_toggle if users else self._vehicle_toggle), {"entity_id": parts[2]}
            elif request.method == "POST" and parts[3] == "delete":
                return (self._user_delete if users else self._vehicle_delete), {"entity_id": parts[2]}
        return None

    # Session helpers ------------------------------------------------------------
    def _current_user(self, request: Request) -> Optional[User]:
        return self.service.auth.get_current_user(request.cookie(SESSION_COOKIE))

    def _guard(self, request: Request, role: Optional[UserRole] = None) -> tuple[Optional[User], Optional[Response]]:
        user = self._current_user(request)
        if not user:
            return None, self._redirect("/login")
        if role is not None and user.role != role:
            return None, self._not_found()
        return user, None

    def _anonymous_flash_key(self, request: Request) -> str:
        key = request.cookie(FLASH_COOKIE) or request.issued_flash_key
        if not key:
            key = request.issued_flash_key = f"anon:{secrets.token_urlsafe(16)}"
        return key

    def _flash(
        self,
        request: Request,
        category: str,
        message: str,
        *,
        token: Optional[str] = None,
        anonymous: bool = False,
    ) -> None:
        """Queue a message for the next rendered page of this visitor. Logged-out
        visitors are told apart by their own short-lived flash cookie."""
        if anonymous:
            key = self._anonymous_flash_key(request)
        else:
            key = token or request.cookie(SESSION_COOKIE) or self._anonymous_flash_key(request)
        self.flash_messages.setdefault(key, []).append((category, message))

    def _consume_messages(self, request: Request) -> list[tuple[str, str]]:
        messages: list[tuple[str, str]] = []
        keys = (request.cookie(SESSION_COOKIE), request.cookie(FLASH_COOKIE), request.issued_flash_key)
        for key in dict.fromkeys(keys):
            if key:
                messages.extend(self.flash_messages.pop(key, []))
        return messages

    def _draft(self, request: Request, user: User) -> ReportSubmission:
        token = request.cookie(SESSION_COOKIE) or ""
        self._prune_drafts(keep=token)
        draft = self.drafts.get(token)
        if draft is None or draft.driver.id != user.id:
            self._drop_draft(token)
            draft = self.service.new_submission(user)
            self.drafts[token] = draft
        return draft

    def _prune_drafts(self, *, keep: str) -> None:
        """Close drafts whose session has expired or was revoked."""
        stale = [
            token
            for token in self.drafts
            if token != keep and self.service.auth.get_current_user(token) is None
        ]
        for token in stale:
            self._drop_draft(token)
        if stale:
            logger.info("Released %d abandoned report drafts", len(stale))

    def _drop_draft(self, token: Optional[str]) -> None:
        if not token:
            return
        draft = self.drafts.pop(token, None)
        if draft is not None:
            draft.close()

    # Authentication -------------------------------------------------------------
    def _home(self, request: Request) -> Response:
        user = self._current_user(request)
        if not user:
            return self._redirect("/login")
        return self._redirect("/admin" if user.role == UserRole.ADMIN else "/fahrer")

    def _login_get(self, request: Request) -> Response:
        if self._current_user(request):
            return self._redirect("/")
        return self._page("Anmelden", None, self._render_login())

    def _login_post(self, request: Request) -> Response:
        username = (request.form_value("username") or "").strip()
        password = request.form_value("password") or ""
        try:
            session = self.service.auth.sign_in(username, password)
        except AuthenticationError as exc:
            self._flash(request, "error", str(exc))
            return self._page("Anmelden", None, self._render_login(username=username))
        response = self._redirect("/")
        response.set_cookie(
            SESSION_COOKIE,
            session.token,
            path="/",
            max_age=self.service.auth.token_expiry_minutes * 60,
        )
        self._flash(request, "success", "Erfolgreich angemeldet.", token=session.token)
        return response

    def _logout(self, request: Request) -> Response:
        token = request.cookie(SESSION_COOKIE)
        self.service.auth.sign_out(token)
        self._drop_draft(token)
        response = self._redirect("/login")
        response.set_cookie(SESSION_COOKIE, "", path="/", max_age=0)
        self._flash(request, "info", "Sie wurden abgemeldet.", anonymous=True)
        return response

    # Driver ---------------------------------------------------------------------
    def _driver_get(self, request: Request) -> Response:
        user, denied = self._guard(request, UserRole.DRIVER)
        if denied:
            return denied
        draft = self._draft(request, user)
        return self._page("Neue Meldung", user, self._render_driver_form(user, draft))

    def _driver_post(self, request: Request) -> Response:
        user, denied = self._guard(request, UserRole.DRIVER)
        if denied:
            return denied
        draft = self._draft(request, user)
        action = request.form_value("action") or "submit"

        if action == "dismiss":
            draft.dismiss_confirmation()
            return self._redirect("/fahrer")

        vehicle_raw = (request.form_value("vehicle_id") or "").strip()
        draft.vehicle_id = int(vehicle_raw) if vehicle_raw.isdigit() else None
        draft.mileage = (request.form_value("mileage") or "").strip()
        draft.notes = request.form_value("notes") or ""
        draft.dismiss_confirmation()

        rejected = self._attach_uploads(request, draft)
        if rejected:
            for message in rejected:
                self._flash(request, "error", message)
            return self._redirect("/fahrer")

        if action.startswith("remove_photo:"):
            try:
                draft.photos.remove(int(action.split(":", 1)[1]))
            except (ValueError, IndexError):
                self._flash(request, "error", "Foto nicht gefunden")
            return self._redirect("/fahrer")
        if action == "add_photo":
            return self._redirect("/fahrer")

        report = draft.submit()
        if report is None:
            self._flash(request, "error", draft.error or "Fehler beim Speichern")
        return self._redirect("/fahrer")

    def _attach_uploads(self, request: Request, draft: ReportSubmission) -> list[str]:
        rejected: list[str] = []
        for slot in PhotoSlot:
            for upload in request.file_values(f"photo_{slot.value}"):
                if not upload.data and not upload.filename:
                    continue
                try:
                    draft.photos.select(slot, upload)
                except PhotoRejectedError as exc:
                    logger.info("Photo %r for slot %s rejected: %s", upload.filename, slot.value, exc)
                    rejected.append(f"{slot.label}: {exc}")
        return rejected

    def _toggle_favorite(self, request: Request, *, vehicle_id: str) -> Response:
        user, denied = self._guard(request, UserRole.DRIVER)
        if denied:
            return denied
        try:
            is_favorite = self.service.toggle_favorite(driver=user, vehicle_id=int(vehicle_id))
        except (ValueError, LookupError):
            return self._not_found()
        self._flash(
            request,
            "info",
            "Fahrzeug als Favorit markiert." if is_favorite else "Favorit entfernt.",
        )
        return self._redirect("/fahrer")

    def _driver_history(self, request: Request) -> Response:
        user, denied = self._guard(request, UserRole.DRIVER)
        if denied:
            return denied
        reports = self.service.reports.list_driver_history(user)
        content = self._render_report_table(
            "Meine letzten Meldungen",
            reports,
            detail_prefix="/fahrer/report",
            show_driver=False,
        )
        return self._page("Historie", user, content)

    def _driver_report(self, request: Request, *, report_id: str) -> Response:
        user, denied = self._guard(request, UserRole.DRIVER)
        if denied:
            return denied
        try:
            report = self.service.reports.get_report(requester=user, report_id=int(report_id))
        except (ValueError, LookupError, PermissionError):
            return self._not_found()
        return self._page(f"Meldung {report.id}", user, self._render_report_detail(report, downloads=False))

    # Admin: reports -------------------------------------------------------------
    def _admin_reports(self, request: Request) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        report_filter, page_number = self._parse_filter(request)
        page = self.service.reports.browse_reports(requester=user, report_filter=report_filter, page=page_number)
        content = self._render_filter_form(report_filter) + self._render_report_page(report_filter, page)
        return self._page("Meldungen", user, content)

    def _admin_export(self, request: Request) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        report_filter, _ = self._parse_filter(request)
        filename, data = self.service.reports.export_reports_workbook(requester=user, report_filter=report_filter)
        return self._download(
            filename,
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            data,
        )

    def _admin_report(self, request: Request, *, report_id: str) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        try:
            report = self.service.reports.get_report(requester=user, report_id=int(report_id))
        except (ValueError, LookupError):
            return self._not_found()
        return self._page(f"Meldung {report.id}", user, self._render_report_detail(report, downloads=True))

    def _admin_photo_download(self, request: Request, *, report_id: str, photo_id: str) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        try:
            filename, content_type, data = self.service.reports.load_photo(
                requester=user,
                report_id=int(report_id),
                photo_id=int(photo_id),
            )
        except (ValueError, LookupError, FileNotFoundError):
            return self._not_found()
        return self._download(filename, content_type, data)

    def _admin_photo_archive(self, request: Request, *, report_id: str) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        try:
            filename, data = self.service.reports.photo_archive(requester=user, report_id=int(report_id))
        except (ValueError, LookupError, FileNotFoundError):
            return self._not_found()
        return self._download(filename, "application/zip", data)

    def _parse_filter(self, request: Request) -> tuple[ReportFilter, int]:
        page_raw = request.query_value("seite") or "1"
        page = int(page_raw) if page_raw.isdigit() else 1
        if request.query_value("gefiltert") != "1":
            return self.service.reports.default_filter(), page
        return (
            ReportFilter(
                date_from=_parse_date(request.query_value("von")),
                date_to=_parse_date(request.query_value("bis")),
                driver_ids=_parse_ids(request.query.get("fahrer", [])),
                vehicle_ids=_parse_ids(request.query.get("fahrzeug", [])),
                concession=(request.query_value("konzession") or "").strip() or None,
                search=(request.query_value("suche") or "").strip(),
            ),
            page,
        )

    # Admin: users ---------------------------------------------------------------
    def _users_get(self, request: Request) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        return self._page("Benutzer", user, self._render_users(user, {}))

    def _users_post(self, request: Request) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        values = _form_values(request, USER_FORM)
        try:
            created = self.service.users.create_user(requester=user, values=values)
        except ValidationError as exc:
            self._flash(request, "error", str(exc))
            return self._page("Benutzer", user, self._render_users(user, values))
        self._flash(request, "success", f"Benutzer {created.username} angelegt.")
        return self._redirect("/admin/users")

    def _user_edit_get(self, request: Request, *, entity_id: str) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        try:
            target = self.service.users.get_user(int(entity_id))
        except (ValueError, LookupError):
            return self._not_found()
        values = {
            "first_name": target.first_name,
            "last_name": target.last_name,
            "username": target.username,
            "password": "",
            "role": target.role.value,
        }
        content = self._render_entity_form(
            "Benutzer bearbeiten",
            USER_FORM,
            values,
            action=f"/admin/users/{target.id}",
            submit_label="Speichern",
            hint="Leeres Passwort lässt das bestehende Passwort unverändert.",
        )
        return self._page("Benutzer bearbeiten", user, content)

    def _user_edit_post(self, request: Request, *, entity_id: str) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        values = _form_values(request, USER_FORM)
        try:
            updated = self.service.users.update_user(requester=user, user_id=int(entity_id), values=values)
        except (ValueError, LookupError) as exc:
            if not isinstance(exc, ValidationError):
                return self._not_found()
            self._flash(request, "error", str(exc))
            content = self._render_entity_form(
                "Benutzer bearbeiten",
                USER_FORM,
                values,
                action=f"/admin/users/{entity_id}",
                submit_label="Speichern",
            )
            return self._page("Benutzer bearbeiten", user, content)
        self._flash(request, "success", f"Benutzer {updated.username} gespeichert.")
        return self._redirect("/admin/users")

    def _user_toggle(self, request: Request, *, entity_id: str) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        try:
            target = self.service.users.toggle_user_active(requester=user, user_id=int(entity_id))
        except (ValueError, LookupError):
            return self._not_found()
        state = "aktiviert" if target.is_active else "deaktiviert"
        self._flash(request, "success", f"Benutzer {target.username} {state}.")
        return self._redirect("/admin/users")

    def _user_delete(self, request: Request, *, entity_id: str) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        if request.form_value("confirm") != "1":
            self._flash(request, "error", "Bitte bestätigen Sie das Löschen.")
            return self._redirect("/admin/users")
        try:
            self.service.users.delete_user(requester=user, user_id=int(entity_id))
        except (ValidationError, PermissionError) as exc:
            self._flash(request, "error", str(exc))
            return self._redirect("/admin/users")
        except (ValueError, LookupError):
            return self._not_found()
        self._flash(request, "success", "Benutzer gelöscht.")
        return self._redirect("/admin/users")

    # Admin: vehicles ------------------------------------------------------------
    def _vehicles_get(self, request: Request) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        return self._page("Fahrzeuge", user, self._render_vehicles(user, {}))

    def _vehicles_post(self, request: Request) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        values = _form_values(request, VEHICLE_FORM)
        try:
            created = self.service.vehicles.create_vehicle(requester=user, values=values)
        except ValidationError as exc:
            self._flash(request, "error", str(exc))
            return self._page("Fahrzeuge", user, self._render_vehicles(user, values))
        self._flash(request, "success", f"Fahrzeug {created.license_plate} angelegt.")
        return self._redirect("/admin/vehicles")

    def _vehicle_edit_get(self, request: Request, *, entity_id: str) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        try:
            vehicle = self.service.vehicles.get_vehicle(int(entity_id))
        except (ValueError, LookupError):
            return self._not_found()
        values = {
            "license_plate": vehicle.license_plate,
            "brand": vehicle.brand or "",
            "model": vehicle.model or "",
            "concession": vehicle.concession or "",
        }
        content = self._render_entity_form(
            "Fahrzeug bearbeiten",
            VEHICLE_FORM,
            values,
            action=f"/admin/vehicles/{vehicle.id}",
            submit_label="Speichern",
        )
        return self._page("Fahrzeug bearbeiten", user, content)

    def _vehicle_edit_post(self, request: Request, *, entity_id: str) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        values = _form_values(request, VEHICLE_FORM)
        try:
            updated = self.service.vehicles.update_vehicle(requester=user, vehicle_id=int(entity_id), values=values)
        except (ValueError, LookupError) as exc:
            if not isinstance(exc, ValidationError):
                return self._not_found()
            self._flash(request, "error", str(exc))
            content = self._render_entity_form(
                "Fahrzeug bearbeiten",
                VEHICLE_FORM,
                values,
                action=f"/admin/vehicles/{entity_id}",
                submit_label="Speichern",
            )
            return self._page("Fahrzeug bearbeiten", user, content)
        self._flash(request, "success", f"Fahrzeug {updated.license_plate} gespeichert.")
        return self._redirect("/admin/vehicles")

    def _vehicle_toggle(self, request: Request, *, entity_id: str) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        try:
            vehicle = self.service.vehicles.toggle_vehicle_active(requester=user, vehicle_id=int(entity_id))
        except (ValueError, LookupError):
            return self._not_found()
        state = "aktiviert" if vehicle.is_active else "deaktiviert"
        self._flash(request, "success", f"Fahrzeug {vehicle.license_plate} {state}.")
        return self._redirect("/admin/vehicles")

    def _vehicle_delete(self, request: Request, *, entity_id: str) -> Response:
        user, denied = self._guard(request, UserRole.ADMIN)
        if denied:
            return denied
        if request.form_value("confirm") != "1":
            self._flash(request, "error", "Bitte bestätigen Sie das Löschen.")
            return self._redirect("/admin/vehicles")
        try:
            self.service.vehicles.delete_vehicle(requester=user, vehicle_id=int(entity_id))
        except ValidationError as exc:
            self._flash(request, "error", str(exc))
            return self._redirect("/admin/vehicles")
        except (ValueError, LookupError):
            return self._not_found()
        self._flash(request, "success", "Fahrzeug gelöscht.")
        return self._redirect("/admin/vehicles")

    # Utility responses ----------------------------------------------------------
    def _page(self, title: str, user: Optional[User], content: str) -> Response:
        nav = self._nav_links(user)
        body = f"""
        <!doctype html>
        <html lang=\"de\">
          <head>
            <meta charset=\"utf-8\" />
            <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\" />
            <title>{html.escape(title)} - Car Melde App</title>
            <style>{STYLES}</style>
          </head>
          <body>
            <header class=\"top-bar\">
              <div class=\"brand\">Car Melde App</div>
              <nav class=\"nav-links\">{nav}</nav>
            </header>
            <main class=\"content\">
              <!--FLASH-->
              {content}
            </main>
          </body>
        </html>
        """
        return Response(body=body)

    def _redirect(self, location: str) -> Response:
        response = Response(status=HTTPStatus.SEE_OTHER)
        response.add_header("Location", location)
        response.body = f"<html><body>Weiterleitung zu <a href=\"{html.escape(location)}\">{html.escape(location)}</a></body></html>"
        return response

    def _not_found(self) -> Response:
        body = "<html><body><h1>404 Nicht gefunden</h1></body></html>"
        return Response(status=HTTPStatus.NOT_FOUND, headers=[("Content-Type", "text/html; charset=utf-8")], body=body)

    def _download(self, filename: str, content_type: str, data: bytes) -> Response:
        fallback = filename.encode("ascii", "ignore").decode("ascii").replace('"', "") or "download"
        disposition = f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"
        return Response(
            headers=[("Content-Type", content_type), ("Content-Disposition", disposition)],
            body=data,
        )

    def _serve_upload(self, request: Request, filename: str) -> Response:
        if not self._current_user(request):
            return self._not_found()
        safe_name = Path(filename).name
        if not safe_name:
            return self._not_found()
        try:
            content_type, data = self.service.storage.load(f"/uploads/{safe_name}")
        except FileNotFoundError:
            return self._not_found()
        return Response(headers=[("Content-Type", content_type), ("X-Content-Type-Options", "nosniff")], body=data)

    def _serve_preview(self, request: Request, token: str) -> Response:
        if not self._current_user(request):
            return self._not_found()
        item = self.service.previews.get(token)
        if item is None:
            return self._not_found()
        content_type, data = item
        return Response(
            headers=[
                ("Content-Type", content_type),
                ("Cache-Control", "no-store"),
                ("X-Content-Type-Options", "nosniff"),
            ],
            body=data,
        )

    # Rendering helpers ----------------------------------------------------------
    def _nav_links(self, user: Optional[User]) -> str:
        links: list[str] = []
        if user and user.role == UserRole.ADMIN:
            links.append('<a href="/admin">Meldungen</a>')
            links.append('<a href="/admin/users">Benutzer</a>')
            links.append('<a href="/admin/vehicles">Fahrzeuge</a>')
        elif user:
            links.append('<a href="/fahrer">Neue Meldung</a>')
            links.append('<a href="/fahrer/historie">Historie</a>')
        if user:
            links.append(f'<span class="muted">{html.escape(user.display_name)}</span>')
            links.append('<a href="/logout">Abmelden</a>')
        else:
            links.append('<a href="/login">Anmelden</a>')
        return "".join(links)

    def _render_messages(self, messages: Iterable[tuple[str, str]]) -> str:
        items = [f'<li class="flash {html.escape(cat)}">{html.escape(msg)}</li>' for cat, msg in messages]
        if not items:
            return ""
        return '<ul class="flash-messages">' + "".join(items) + "</ul>"

    def _render_login(self, *, username: str = "") -> str:
        return f"""
        <section class=\"card narrow\">
          <h1>Anmelden</h1>
          <form method=\"post\" action=\"/login\" class=\"form\">
            <label for=\"username\">Benutzername</label>
            <input type=\"text\" id=\"username\" name=\"username\" value=\"{html.escape(username)}\" required autofocus />
            <label for=\"password\">Passwort</label>
            <input type=\"password\" id=\"password\" name=\"password\" required />
            <p><button type=\"submit\">Anmelden</button></p>
          </form>
        </section>
        """

    def _render_driver_form(self, user: User, draft: ReportSubmission) -> str:
        vehicles = self.service.list_vehicles_for_driver(user)
        favorites = self.service.list_favorite_vehicle_ids(user)
        options = ['<option value="">Fahrzeug wählen</option>']
        for vehicle in vehicles:
            selected = " selected" if vehicle.id == draft.vehicle_id else ""
            star = "★ " if vehicle.id in favorites else ""
            options.append(
                f'<option value="{vehicle.id}"{selected}>{html.escape(star + vehicle.label)}</option>'
            )

        confirmation = ""
        if draft.last_report and draft.confirmation_visible():
            seconds = self.settings.success_message_seconds
            confirmation = f"""
            <section class=\"card flash success\" id=\"confirmation\" data-hide-after=\"{seconds}\">
              <p>Meldung #{draft.last_report.id} für {html.escape(draft.last_report.license_plate)} wurde gespeichert.</p>
              <form method=\"post\" action=\"/fahrer\" class=\"inline-form\">
                <button type=\"submit\" name=\"action\" value=\"dismiss\">Schließen</button>
              </form>
              <script>setTimeout(function () {{ var el = document.getElementById('confirmation'); if (el) el.remove(); }}, {seconds * 1000});</script>
            </section>
            """

        slot_items: list[str] = []
        for slot in REQUIRED_PHOTO_SLOTS:
            pending = draft.photos.photo_for(slot)
            if pending:
                index = draft.photos.index_of(pending)
                slot_items.append(
                    f"""
                    <li class=\"photo-slot\">
                      <strong>{html.escape(slot.label)}</strong>
                      <img src=\"{html.escape(pending.preview.url)}\" alt=\"{html.escape(slot.label)}\" />
                      <progress max=\"100\" value=\"{pending.progress()}\"></progress>
                      <label>Ersetzen <input type=\"file\" name=\"photo_{slot.value}\" accept=\"image/*\" capture=\"environment\" /></label>
                      <button type=\"submit\" name=\"action\" value=\"remove_photo:{index}\">Entfernen</button>
                    </li>
                    """
                )
            else:
                slot_items.append(
                    f"""
                    <li class=\"photo-slot missing\">
                      <strong>{html.escape(slot.label)} *</strong>
                      <input type=\"file\" name=\"photo_{slot.value}\" accept=\"image/*\" capture=\"environment\" />
                    </li>
                    """
                )
        for pending in draft.photos.optional_photos:
            index = draft.photos.index_of(pending)
            slot_items.append(
                f"""
                <li class=\"photo-slot\">
                  <strong>{html.escape(pending.slot.label)}</strong>
                  <img src=\"{html.escape(pending.preview.url)}\" alt=\"{html.escape(pending.slot.label)}\" />
                  <progress max=\"100\" value=\"{pending.progress()}\"></progress>
                  <button type=\"submit\" name=\"action\" value=\"remove_photo:{index}\">Entfernen</button>
                </li>
                """
            )
        slot_items.append(
            f"""
            <li class=\"photo-slot\">
              <strong>{html.escape(PhotoSlot.OPTIONAL.label)}</strong>
              <input type=\"file\" name=\"photo_{PhotoSlot.OPTIONAL.value}\" accept=\"image/*\" multiple />
            </li>
            """
        )
        missing = draft.photos.missing_slots
        missing_text = (
            "Fehlende Pflichtfotos: " + ", ".join(html.escape(slot.label) for slot in missing)
            if missing
            else "Alle Pflichtfotos vorhanden."
        )
        max_mb = MAX_PHOTO_BYTES // (1024 * 1024)

        favorite_rows = "".join(
            f"""
            <li>
              {html.escape(vehicle.label)}
              <form method=\"post\" action=\"/fahrer/favoriten/{vehicle.id}\" class=\"inline-form\">
                <button type=\"submit\">{'Favorit entfernen' if vehicle.id in favorites else 'Als Favorit markieren'}</button>
              </form>
            </li>
            """
            for vehicle in vehicles
        )

        return f"""
        {confirmation}
        <section class=\"card\">
          <h1>Neue Fahrzeugmeldung</h1>
          <form method=\"post\" action=\"/fahrer\" enctype=\"multipart/form-data\" class=\"form\">
            <label for=\"vehicle_id\">Fahrzeug</label>
            <select id=\"vehicle_id\" name=\"vehicle_id\">{''.join(options)}</select>
            <label for=\"mileage\">Kilometerstand</label>
            <input type=\"text\" inputmode=\"numeric\" id=\"mileage\" name=\"mileage\" value=\"{html.escape(draft.mileage)}\" />
            <label for=\"notes\">Notizen</label>
            <textarea id=\"notes\" name=\"notes\">{html.escape(draft.notes)}</textarea>
            <h2>Fotos</h2>
            <p class=\"muted\">{missing_text} Bilder bis {max_mb}MB.</p>
            <ul class=\"photo-grid\">{''.join(slot_items)}</ul>
            <p>
              <button type=\"submit\" name=\"action\" value=\"add_photo\">Fotos hinzufügen</button>
              <button type=\"submit\" name=\"action\" value=\"submit\">Meldung absenden</button>
            </p>
          </form>
        </section>
        <section class=\"card\">
          <h2>Favoriten</h2>
          <ul>{favorite_rows}</ul>
        </section>
        """

    def _render_filter_form(self, report_filter: ReportFilter) -> str:
        drivers = self.service.list_drivers()
        vehicles = self.service.list_all_vehicles()
        driver_options = "".join(
            f'<option value="{driver.id}"{" selected" if driver.id in report_filter.driver_ids else ""}>'
            f"{html.escape(driver.display_name)}</option>"
            for driver in drivers
        )
        vehicle_options = "".join(
            f'<option value="{vehicle.id}"{" selected" if vehicle.id in report_filter.vehicle_ids else ""}>'
            f"{html.escape(vehicle.license_plate)}</option>"
            for vehicle in vehicles
        )
        concession_options = ['<option value="">Alle Konzessionen</option>'] + [
            f'<option value="{html.escape(name)}"{" selected" if name == report_filter.concession else ""}>'
            f"{html.escape(name)}</option>"
            for name in list_concessions(vehicles)
        ]
        date_from = report_filter.date_from.isoformat() if report_filter.date_from else ""
        date_to = report_filter.date_to.isoformat() if report_filter.date_to else ""
        return f"""
        <section class=\"card\">
          <h1>Fahrzeugmeldungen</h1>
          <form method=\"get\" action=\"/admin\" class=\"form filter-form\">
            <input type=\"hidden\" name=\"gefiltert\" value=\"1\" />
            <label for=\"von\">Von</label>
            <input type=\"date\" id=\"von\" name=\"von\" value=\"{date_from}\" />
            <label for=\"bis\">Bis</label>
            <input type=\"date\" id=\"bis\" name=\"bis\" value=\"{date_to}\" />
            <label for=\"fahrer\">Fahrer</label>
            <select id=\"fahrer\" name=\"fahrer\" multiple>{driver_options}</select>
            <label for=\"fahrzeug\">Fahrzeuge</label>
            <select id=\"fahrzeug\" name=\"fahrzeug\" multiple>{vehicle_options}</select>
            <label for=\"konzession\">Konzession</label>
            <select id=\"konzession\" name=\"konzession\">{''.join(concession_options)}</select>
            <label for=\"suche\">Suche (Kennzeichen, Notizen)</label>
            <input type=\"search\" id=\"suche\" name=\"suche\" value=\"{html.escape(report_filter.search)}\" />
            <p><button type=\"submit\">Suchen</button></p>
          </form>
        </section>
        """

    def _render_report_page(self, report_filter: ReportFilter, page: Page[VehicleReport]) -> str:
        query = _filter_query(report_filter)
        table = self._render_report_table(
            f"{page.total} Meldungen",
            page.items,
            detail_prefix="/admin/report",
            show_driver=True,
        )
        links: list[str] = []
        if page.has_previous:
            links.append(f'<a href="/admin?{html.escape(urlencode(query + [("seite", page.page - 1)]))}">Zurück</a>')
        links.append(f"<span>Seite {page.page} von {max(page.total_pages, 1)}</span>")
        if page.has_next:
            links.append(f'<a href="/admin?{html.escape(urlencode(query + [("seite", page.page + 1)]))}">Weiter</a>')
        export_url = f"/admin/export?{html.escape(urlencode(query))}"
        return f"""
        {table}
        <section class=\"card\">
          <div class=\"pagination\">{''.join(links)}</div>
          <p><a href=\"{export_url}\">Als Excel exportieren</a></p>
        </section>
        """

    def _render_report_table(
        self,
        heading: str,
        reports: list[VehicleReport],
        *,
        detail_prefix: str,
        show_driver: bool,
    ) -> str:
        columns = 7 if show_driver else 6
        rows: list[str] = []
        for report in reports:
            driver_cell = (
                f"<td>{html.escape(report.driver.display_name if report.driver else '-')}</td>" if show_driver else ""
            )
            rows.append(
                f"""
                <tr>
                  <td>{html.escape(report.report_date)}</td>
                  <td>{html.escape(report.report_time)}</td>
                  {driver_cell}
                  <td>{html.escape(report.license_plate)}</td>
                  <td>{report.mileage}</td>
                  <td>{len(report.photos)}</td>
                  <td><a href=\"{detail_prefix}/{report.id}\">Details</a></td>
                </tr>
                """
            )
        if not rows:
            rows.append(f'<tr class="no-results"><td colspan="{columns}" class="muted">Keine Meldungen gefunden.</td></tr>')
        driver_header = "<th>Fahrer</th>" if show_driver else ""
        return f"""
        <section class=\"card\">
          <h2>{html.escape(heading)}</h2>
          <table class=\"report-table\">
            <thead><tr><th>Datum</th><th>Uhrzeit</th>{driver_header}<th>Kennzeichen</th><th>Kilometerstand</th><th>Fotos</th><th></th></tr></thead>
            <tbody>{''.join(rows)}</tbody>
          </table>
        </section>
        """

    def _render_report_detail(self, report: VehicleReport, *, downloads: bool) -> str:
        photo_items: list[str] = []
        for photo in report.photos:
            url = html.escape(photo.photo_url)
            actions = f'<a href="{url}" target="_blank" rel="noopener">Vollbild</a>'
            if downloads:
                actions += f' <a href="/admin/report/{report.id}/fotos/{photo.id}">Herunterladen</a>'
            photo_items.append(
                f"""
                <li>
                  <strong>{html.escape(photo.photo_type.label)}</strong>
                  <img src=\"{url}\" alt=\"{html.escape(photo.photo_type.label)}\" loading=\"lazy\" />
                  <div>{actions}</div>
                </li>
                """
            )
        photos_html = (
            '<ul class="photo-grid">' + "".join(photo_items) + "</ul>"
            if photo_items
            else '<p class="muted">Keine Fotos vorhanden.</p>'
        )
        bulk = (
            f'<p><a href="/admin/report/{report.id}/fotos">Alle Fotos herunterladen (ZIP)</a></p>'
            if downloads and report.photos
            else ""
        )
        driver = report.driver.display_name if report.driver else "-"
        return f"""
        <section class=\"card\">
          <h1>Meldung {report.id}</h1>
          <dl class=\"meta\">
            <div><dt>Datum</dt><dd>{html.escape(report.report_date)} {html.escape(report.report_time)}</dd></div>
            <div><dt>Fahrer</dt><dd>{html.escape(driver)}</dd></div>
            <div><dt>Kennzeichen</dt><dd>{html.escape(report.license_plate)}</dd></div>
            <div><dt>Kilometerstand</dt><dd>{report.mileage}</dd></div>
            <div><dt>Notizen</dt><dd>{html.escape(report.notes or '-')}</dd></div>
          </dl>
          <h2>Fotos</h2>
          {photos_html}
          {bulk}
        </section>
        """

    def _render_entity_form(
        self,
        heading: str,
        definition: tuple[FormField, ...],
        values: Mapping[str, Any],
        *,
        action: str,
        submit_label: str,
        hint: str = "",
    ) -> str:
        field_html: list[str] = []
        for form_field in definition:
            label = html.escape(form_field.label) + (" *" if form_field.required else "")
            value = html.escape(str(values.get(form_field.id) or ""))
            if form_field.field_type is FieldType.CHOICE:
                choices = "".join(
                    f'<option value="{html.escape(choice)}"{" selected" if choice == values.get(form_field.id) else ""}>'
                    f"{html.escape(choice)}</option>"
                    for choice in form_field.choices
                )
                control = f'<select id="{form_field.id}" name="{form_field.id}">{choices}</select>'
            elif form_field.field_type is FieldType.PASSWORD:
                control = f'<input type="password" id="{form_field.id}" name="{form_field.id}" />'
            else:
                control = f'<input type="text" id="{form_field.id}" name="{form_field.id}" value="{value}" />'
            field_html.append(f'<label for="{form_field.id}">{label}</label>{control}')
        hint_html = f'<p class="muted">{html.escape(hint)}</p>' if hint else ""
        return f"""
        <section class=\"card\">
          <h2>{html.escape(heading)}</h2>
          <form method=\"post\" action=\"{html.escape(action)}\" class=\"form\">
            {''.join(field_html)}
            {hint_html}
            <p><button type=\"submit\">{html.escape(submit_label)}</button></p>
          </form>
        </section>
        """

    def _render_entity_actions(self, base: str, entity_id: int, *, is_active: bool, deletable: bool) -> str:
        toggle_label = "Deaktivieren" if is_active else "Aktivieren"
        disabled = "" if deletable else " disabled"
        return f"""
        <a href=\"{base}/{entity_id}\">Bearbeiten</a>
        <form method=\"post\" action=\"{base}/{entity_id}/toggle\" class=\"inline-form\">
          <button type=\"submit\">{toggle_label}</button>
        </form>
        <form method=\"post\" action=\"{base}/{entity_id}/delete\" class=\"inline-form\" onsubmit=\"return confirm('Wirklich löschen?');\">
          <label><input type=\"checkbox\" name=\"confirm\" value=\"1\"{disabled} /> bestätigen</label>
          <button type=\"submit\"{disabled}>Löschen</button>
        </form>
        """

    def _render_users(self, user: User, values: Mapping[str, Any]) -> str:
        rows: list[str] = []
        for entry in self.service.users.list_users(requester=user):
            status = '<span class="badge">aktiv</span>' if entry.is_active else '<span class="badge inactive">inaktiv</span>'
            actions = self._render_entity_actions(
                "/admin/users",
                entry.id,
                is_active=entry.is_active,
                deletable=entry.role != UserRole.ADMIN,
            )
            rows.append(
                f"<tr><td>{html.escape(entry.display_name)}</td><td>{html.escape(entry.username)}</td>"
                f"<td>{html.escape(entry.role.value)}</td><td>{status}</td><td>{actions}</td></tr>"
            )
        create_values = {"role": UserRole.DRIVER.value, **values}
        form = self._render_entity_form(
            "Neuer Benutzer",
            USER_FORM,
            create_values,
            action="/admin/users",
            submit_label="Anlegen",
        )
        return f"""
        <section class=\"card\">
          <h1>Benutzer</h1>
          <table>
            <thead><tr><th>Name</th><th>Benutzername</th><th>Rolle</th><th>Status</th><th></th></tr></thead>
            <tbody>{''.join(rows)}</tbody>
          </table>
        </section>
        {form}
        """

    def _render_vehicles(self, user: User, values: Mapping[str, Any]) -> str:
        rows: list[str] = []
        vehicles: list[Vehicle] = self.service.vehicles.list_vehicles(requester=user)
        for vehicle in vehicles:
            status = '<span class="badge">aktiv</span>' if vehicle.is_active else '<span class="badge inactive">inaktiv</span>'
            actions = self._render_entity_actions(
                "/admin/vehicles",
                vehicle.id,
                is_active=vehicle.is_active,
                deletable=True,
            )
            rows.append(
                f"<tr><td>{html.escape(vehicle.license_plate)}</td><td>{html.escape(vehicle.brand or '-')}</td>"
                f"<td>{html.escape(vehicle.model or '-')}</td><td>{html.escape(vehicle.concession or '-')}</td>"
                f"<td>{status}</td><td>{actions}</td></tr>"
            )
        form = self._render_entity_form(
            "Neues Fahrzeug",
            VEHICLE_FORM,
            values,
            action="/admin/vehicles",
            submit_label="Anlegen",
        )
        return f"""
        <section class=\"card\">
          <h1>Fahrzeuge</h1>
          <table>
            <thead><tr><th>Kennzeichen</th><th>Marke</th><th>Modell</th><th>Konzession</th><th>Status</th><th></th></tr></thead>
            <tbody>{''.join(rows)}</tbody>
          </table>
        </section>
        {form}
        """


def _form_values(request: Request, definition: tuple[FormField, ...]) -> dict[str, Optional[str]]:
    return {form_field.id: request.form_value(form_field.id) for form_field in definition}


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def _parse_ids(values: Iterable[str]) -> tuple[int, ...]:
    return tuple(sorted({int(value) for value in values if value.strip().isdigit()}))


def _filter_query(report_filter: ReportFilter) -> list[tuple[str, Any]]:
    query: list[tuple[str, Any]] = [("gefiltert", "1")]
    if report_filter.date_from:
        query.append(("von", report_filter.date_from.isoformat()))
    if report_filter.date_to:
        query.append(("bis", report_filter.date_to.isoformat()))
    query.extend(("fahrer", driver_id) for driver_id in report_filter.driver_ids)
    query.extend(("fahrzeug", vehicle_id) for vehicle_id in report_filter.vehicle_ids)
    if report_filter.concession:
        query.append(("konzession", report_filter.concession))
    if report_filter.search:
        query.append(("suche", report_filter.search))
    return query


def create_app(
    database_path: Optional[Path | str] = None,
    *,
    settings: Optional[Settings] = None,
    storage: Optional[PhotoStorage] = None,
) -> CarReportWebApp:
    path = Path(database_path) if database_path else None
    return CarReportWebApp(path, settings=settings, storage=storage)


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    create_app().run()
