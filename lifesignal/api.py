from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from lifesignal.config import Settings, get_settings
from lifesignal.database import (
    InMemoryAuth,
    InMemoryDocumentStore,
    InMemoryIdentifierLookup,
    InMemoryNotifier,
)
from lifesignal.errors import (
    DuplicateContact,
    InvalidInterval,
    LifeSignalError,
    NotAuthenticated,
    NotFound,
    SyncFailure,
)
from lifesignal.models import PersonRecord
from lifesignal.observability import get_logger, setup_logging
from lifesignal.session import Session
from lifesignal.status import attention_count, classify, pending_ping_count
from lifesignal.timing import format_interval, remaining

logger = get_logger(__name__)

router = APIRouter()

_STATUS_CODES: dict[type[LifeSignalError], int] = {
    NotAuthenticated: 401,
    NotFound: 404,
    DuplicateContact: 409,
    SyncFailure: 503,
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IntervalRequest(_CamelModel):
    seconds: float


class NotificationPreferencesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    notifications_enabled: bool | None = Field(default=None, alias="notificationsEnabled")
    notify_30_min_before: bool | None = Field(default=None, alias="notify30MinBefore")
    notify_2_hours_before: bool | None = Field(default=None, alias="notify2HoursBefore")


class AddContactRequest(_CamelModel):
    qr_code_id: str
    is_responder: bool = False
    is_dependent: bool = False


class RolesRequest(_CamelModel):
    is_responder: bool
    is_dependent: bool


async def _session(request: Request) -> Session:
    session: Session = request.app.state.session
    if session.me is None:
        await session.load()
    return session


def _contact_out(record: PersonRecord, session: Session) -> dict:
    now = session.now_fn()
    return {
        **record.to_document(),
        "status": classify(record, now).value,
        "timeRemaining": format_interval(remaining(record, now)),
    }


async def _handle_error(request: Request, exc: LifeSignalError) -> JSONResponse:
    status_code = next(
        (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 400
    )
    logger.info(
        "Request rejected",
        path=request.url.path,
        error=exc.code,
        status_code=status_code,
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": {
                "error": exc.code,
                "message": exc.user_message,
                "retryable": exc.retryable,
            }
        },
    )


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/me")
async def get_me(request: Request) -> dict:
    session = await _session(request)
    return _contact_out(session.me, session)


@router.post("/me/check-in")
async def check_in(request: Request) -> dict:
    session = await _session(request)
    return _contact_out(await session.check_in(), session)


@router.put("/me/interval")
async def set_interval(body: IntervalRequest, request: Request) -> dict:
    session = await _session(request)
    try:
        interval = timedelta(seconds=body.seconds)
    except (ValueError, OverflowError):
        raise InvalidInterval() from None
    record = await session.set_interval(interval)
    return _contact_out(record, session)


@router.post("/me/alert")
async def trigger_alert(request: Request) -> dict:
    session = await _session(request)
    return _contact_out(await session.trigger_alert(), session)


@router.delete("/me/alert")
async def clear_alert(request: Request) -> dict:
    session = await _session(request)
    return _contact_out(await session.clear_alert(), session)


@router.patch("/me/notifications")
async def update_notifications(
    body: NotificationPreferencesRequest, request: Request
) -> dict:
    session = await _session(request)
    record = await session.update_notification_preferences(
        notifications_enabled=body.notifications_enabled,
        notify_30_min_before=body.notify_30_min_before,
        notify_2_hours_before=body.notify_2_hours_before,
    )
    return _contact_out(record, session)


@router.get("/contacts")
async def list_contacts(request: Request) -> dict:
    session = await _session(request)
    now = session.now_fn()
    return {
        "contacts": [_contact_out(r, session) for r in session.sorted_contacts()],
        "pendingPings": pending_ping_count(session.store.responders()),
        "needsAttention": attention_count(session.store.dependents(), now),
    }


@router.post("/contacts")
async def add_contact(body: AddContactRequest, request: Request) -> dict:
    session = await _session(request)
    result = await session.add_contact(
        body.qr_code_id,
        is_responder=body.is_responder,
        is_dependent=body.is_dependent,
    )
    return {
        "contact": _contact_out(result.contact, session),
        "alreadyExisted": result.already_existed,
    }


@router.delete("/contacts/{contact_id}")
async def remove_contact(contact_id: str, request: Request) -> dict:
    session = await _session(request)
    await session.remove_contact(contact_id)
    return {"status": "removed", "id": contact_id}


@router.patch("/contacts/{contact_id}/roles")
async def update_roles(contact_id: str, body: RolesRequest, request: Request) -> dict:
    session = await _session(request)
    record = await session.update_contact_roles(
        contact_id, is_responder=body.is_responder, is_dependent=body.is_dependent
    )
    return _contact_out(record, session)


@router.post("/contacts/{contact_id}/ping")
async def ping_dependent(contact_id: str, request: Request) -> dict:
    session = await _session(request)
    return _contact_out(await session.ping_dependent(contact_id), session)


@router.delete("/contacts/{contact_id}/ping")
async def clear_ping(contact_id: str, request: Request) -> dict:
    session = await _session(request)
    return _contact_out(await session.clear_ping(contact_id), session)


@router.post("/contacts/{contact_id}/ping/respond")
async def respond_to_ping(contact_id: str, request: Request) -> dict:
    session = await _session(request)
    return _contact_out(await session.respond_to_ping(contact_id), session)


@router.post("/pings/respond-all")
async def respond_to_all_pings(request: Request) -> dict:
    session = await _session(request)
    answered = await session.respond_to_all_pings()
    return {"answered": [r.id for r in answered]}


def create_app(
    session: Session | None = None, settings: Settings | None = None
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_json)

    if session is None:
        db = InMemoryDocumentStore()
        session = Session(
            auth=InMemoryAuth(),
            sync=db,
            notifier=InMemoryNotifier(),
            lookup=InMemoryIdentifierLookup(db),
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.session.unwatch_all()

    app = FastAPI(title=settings.project_name, lifespan=lifespan)
    app.state.session = session
    app.state.settings = settings

    app.add_exception_handler(LifeSignalError, _handle_error)
    app.include_router(router)
    return app
