"""FastAPI router for the memory service.

Implements the endpoints for:
- Entries (/entries, /entry/{id})
- Context selection (/context/select)
- Token usage reporting (/metrics/tokens)
- Status (/stats/counts, /schema, /dashboard)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Query, status

from ..errors import (
    EntryNotFoundError,
    ScanCancelledError,
    StorageError,
    StoreInactiveError,
    ValidationError,
)
from ..memory.models import FileType
from .models import (
    AppendEntryRequest,
    AppendTextRequest,
    DashboardResponse,
    EditEntryRequest,
    EntryModel,
    QueryResponse,
    RevisionModel,
    SchemaStatusResponse,
    SelectContextRequest,
    SelectContextResponse,
    TokenUsageRequest,
    TokenUsageResponse,
)

if TYPE_CHECKING:
    from .core import MemoryService


def _http_error(exc: Exception) -> HTTPException:
    """Map a domain error onto an HTTP status."""
    if isinstance(exc, ValidationError):
        return HTTPException(
            status_code=422,
            detail={"message": "Entry rejected", "errors": exc.errors},
        )
    if isinstance(exc, EntryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ScanCancelledError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, (StorageError, StoreInactiveError)):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Memory store unavailable: {exc}",
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _file_type(raw: str) -> FileType:
    try:
        return FileType(raw.upper())
    except ValueError:
        raise HTTPException(
            status_code=422,
            detail={"message": "Entry rejected", "errors": [f"Unknown entry type '{raw}'"]},
        ) from None


def build_router(service: "MemoryService") -> APIRouter:
    """Build the memory API router.

    Args:
        service: The MemoryService instance

    Returns:
        Configured APIRouter
    """
    router = APIRouter()

    # -----------------------------------------------------------------------
    # Entries
    # -----------------------------------------------------------------------

    @router.post(
        "/entries",
        response_model=EntryModel,
        status_code=status.HTTP_201_CREATED,
    )
    def append_entry(request: AppendEntryRequest) -> EntryModel:
        """Validate and store a new entry."""
        try:
            metadata = request.metadata.to_metadata() if request.metadata else None
            entry = service.append(_file_type(request.file_type), request.content, metadata)
        except (ValidationError, StorageError, StoreInactiveError) as exc:
            raise _http_error(exc) from exc
        return EntryModel.from_entry(entry)

    @router.get("/entries/{file_type}", response_model=QueryResponse)
    def query_entries(
        file_type: str,
        limit: int = Query(default=50, ge=1, le=1000),
    ) -> QueryResponse:
        """Newest entries of one type, with the total match count."""
        try:
            result = service.query(_file_type(file_type), limit)
        except (StorageError, StoreInactiveError) as exc:
            raise _http_error(exc) from exc
        return QueryResponse(
            entries=[EntryModel.from_entry(e) for e in result.entries],
            count=result.count,
        )

    @router.get("/entry/{entry_id}", response_model=EntryModel)
    def get_entry(entry_id: int) -> EntryModel:
        try:
            return EntryModel.from_entry(service.get_entry(entry_id))
        except (EntryNotFoundError, StorageError, StoreInactiveError) as exc:
            raise _http_error(exc) from exc

    @router.patch("/entry/{entry_id}", response_model=EntryModel)
    def edit_entry(entry_id: int, request: EditEntryRequest) -> EntryModel:
        """Edit an entry. The previous state is kept in its history."""
        kwargs: dict[str, Any] = {}
        try:
            if request.clear_metadata:
                kwargs["metadata"] = None
            elif request.metadata is not None:
                kwargs["metadata"] = request.metadata.to_metadata()
            entry = service.edit_entry(entry_id, request.content, **kwargs)
        except (ValidationError, EntryNotFoundError, StorageError, StoreInactiveError) as exc:
            raise _http_error(exc) from exc
        return EntryModel.from_entry(entry)

    @router.post("/entry/{entry_id}/append", response_model=EntryModel)
    def append_to_entry(entry_id: int, request: AppendTextRequest) -> EntryModel:
        try:
            entry = service.append_to_entry(entry_id, request.text)
        except (ValidationError, EntryNotFoundError, StorageError, StoreInactiveError) as exc:
            raise _http_error(exc) from exc
        return EntryModel.from_entry(entry)

    @router.get("/entry/{entry_id}/history", response_model=list[RevisionModel])
    def entry_history(entry_id: int) -> list[RevisionModel]:
        try:
            revisions = service.entry_history(entry_id)
        except (EntryNotFoundError, StorageError, StoreInactiveError) as exc:
            raise _http_error(exc) from exc
        return [RevisionModel.from_revision(r) for r in revisions]

    # -----------------------------------------------------------------------
    # Context selection
    # -----------------------------------------------------------------------

    @router.post("/context/select", response_model=SelectContextResponse)
    def select_context(request: SelectContextRequest) -> SelectContextResponse:
        """Choose the entries most worth including under a token budget."""
        overrides: dict[str, Any] = {"use_semantic_search": request.use_semantic_search}
        if request.min_relevance_threshold is not None:
            overrides["min_relevance_threshold"] = request.min_relevance_threshold
        if request.include_types is not None:
            overrides["include_types"] = tuple(request.include_types)
        if request.max_age_days is not None:
            overrides["max_age_days"] = request.max_age_days
        try:
            result = service.select_context(
                request.query,
                request.token_budget,
                service.default_selection_options(**overrides),
            )
        except (StorageError, StoreInactiveError, ScanCancelledError) as exc:
            raise _http_error(exc) from exc
        return SelectContextResponse.from_result(result)

    # -----------------------------------------------------------------------
    # Metrics and status
    # -----------------------------------------------------------------------

    @router.post(
        "/metrics/tokens",
        response_model=TokenUsageResponse,
        status_code=status.HTTP_201_CREATED,
    )
    def report_tokens(request: TokenUsageRequest) -> TokenUsageResponse:
        """Record one model call's token usage."""
        try:
            metric = service.report_token_usage(
                request.model, request.input_tokens, request.output_tokens
            )
        except (StorageError, StoreInactiveError) as exc:
            raise _http_error(exc) from exc
        return TokenUsageResponse(
            timestamp=metric.timestamp,
            model=metric.model,
            input_tokens=metric.input_tokens,
            output_tokens=metric.output_tokens,
            total_tokens=metric.total_tokens,
            context_status=metric.context_status.value,
        )

    @router.get("/stats/counts", response_model=dict[str, int])
    def entry_counts() -> dict[str, int]:
        try:
            return service.entry_counts()
        except (StorageError, StoreInactiveError) as exc:
            raise _http_error(exc) from exc

    @router.get("/schema", response_model=SchemaStatusResponse)
    def schema_status() -> SchemaStatusResponse:
        return SchemaStatusResponse(**service.state())

    @router.get("/dashboard", response_model=DashboardResponse)
    def dashboard(days: int = Query(default=7, ge=1, le=365)) -> DashboardResponse:
        try:
            return DashboardResponse(**service.dashboard(days=days))
        except (StorageError, StoreInactiveError) as exc:
            raise _http_error(exc) from exc

    return router


__all__ = ["build_router"]
