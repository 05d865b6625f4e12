"""
API Routes for Compound Prompts

This module provides REST API endpoints for resolving compound prompts and
editing their components. Every endpoint answers with the same envelope:

    {"success": bool, "message": str, "data": any, "errors": [str]}

Engine errors map to HTTP statuses: a missing prompt is 404, a circular
reference 409, a depth overflow 422 and an invalid component list 400.
"""

import json
import logging
import traceback
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from .config import EngineConfig, load_config
from .core.bulk import bulk_resolve
from .core.resolution import get_dependencies, preview_components, resolve
from .core.storage import DuplicateSlugError, PromptInUseError, PromptStorage, create_storage
from .core.transfer import TransferError, export_prompts, import_prompts
from .core.types import (
    CircularReferenceError,
    Component,
    CompoundPromptError,
    InvalidComponentError,
    MaxDepthExceededError,
    NotFoundError,
)
from .core.validation import validate_new_component

logger = logging.getLogger(__name__)

# Upper bound on ids per bulk request
MAX_BULK_IDS = 500

ERROR_STATUS = {
    NotFoundError: 404,
    CircularReferenceError: 409,
    MaxDepthExceededError: 422,
    InvalidComponentError: 400,
}


def create_success_response(message: str, data: Any, status: int = 200) -> web.Response:
    """
    Create a standardized success response.

    Args:
        message: Success message
        data: Response data
        status: HTTP status code

    Returns:
        JSON response object
    """
    return web.json_response({
        "success": True,
        "message": message,
        "data": data,
        "errors": []
    }, status=status)


def create_error_response(message: str, errors: List[str], status: int = 400,
                          data: Any = None) -> web.Response:
    """
    Create a standardized error response.

    Args:
        message: Error message
        errors: List of error details
        status: HTTP status code
        data: Optional partial data

    Returns:
        JSON response object
    """
    return web.json_response({
        "success": False,
        "message": message,
        "data": data,
        "errors": errors
    }, status=status)


def engine_error_response(error: CompoundPromptError) -> web.Response:
    """Map an engine error to its HTTP status"""
    status = 400
    for error_type, error_status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            status = error_status
            break

    errors = getattr(error, "errors", None) or [str(error)]
    return create_error_response(str(error), errors, status=status, data=error.to_dict())


def server_error_response(message: str, error: Exception) -> web.Response:
    logger.error(f"{message}: {error}")
    logger.debug(traceback.format_exc())
    return create_error_response(message, ["An unexpected error occurred"], status=500)


def validate_request_json(request_data: Any) -> Tuple[bool, Optional[str], Optional[List[str]]]:
    """
    Validate basic request JSON structure.

    Returns:
        Tuple of (is_valid, error_message, error_details)
    """
    if not isinstance(request_data, dict):
        return False, "Request body must be a JSON object", ["Invalid data format"]

    return True, None, None


async def read_json_object(request: Request) -> Tuple[Optional[Dict[str, Any]], Optional[Response]]:
    """Parse the request body, returning (data, None) or (None, error response)"""
    try:
        data = await request.json()
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in request to {request.path}: {e}")
        return None, create_error_response("Invalid JSON format", [str(e)], status=400)

    is_valid, message, errors = validate_request_json(data)
    if not is_valid:
        return None, create_error_response(message or "Validation error", errors or [], status=400)

    return data, None


def parse_components(raw_components: Any) -> List[Component]:
    """
    Build components from request data.

    Raises:
        InvalidComponentError: If the list or any entry is malformed
    """
    if not isinstance(raw_components, list):
        raise InvalidComponentError("Field 'components' must be a list")
    return [Component.from_dict(entry) for entry in raw_components]


def get_storage(request: Request) -> PromptStorage:
    return request.app["storage"]


async def create_prompt(request: Request) -> Response:
    """Create a literal or compound prompt"""
    data, error_response = await read_json_object(request)
    if error_response is not None:
        return error_response

    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        return create_error_response("Title is required", ["Field 'title' must be a non-empty string"])

    text = data.get("text")
    if text is not None and not isinstance(text, str):
        return create_error_response("Invalid prompt text", ["Field 'text' must be a string"])

    is_compound = data.get("is_compound", False)
    if not isinstance(is_compound, bool):
        return create_error_response("Invalid compound flag", ["Field 'is_compound' must be a boolean"])

    slug = data.get("slug")
    if slug is not None and (not isinstance(slug, str) or not slug.strip()):
        return create_error_response("Invalid slug", ["Field 'slug' must be a non-empty string"])

    try:
        prompt = get_storage(request).create_prompt(
            title=title.strip(),
            text=text,
            is_compound=is_compound,
            slug=slug,
        )
        return create_success_response("Prompt created successfully", prompt.to_dict(), status=201)
    except CompoundPromptError as e:
        return engine_error_response(e)
    except DuplicateSlugError as e:
        return create_error_response(str(e), [f"Slug '{e.slug}' is already in use"], status=409)
    except Exception as e:
        return server_error_response("Failed to create prompt", e)


async def get_resolved_prompt(request: Request) -> Response:
    """Resolve a prompt to its final text"""
    prompt_id = request.match_info["id"]
    storage = get_storage(request)

    try:
        with storage.session_scope() as session:
            result = resolve(prompt_id, storage.fetcher(session))
        return create_success_response("Prompt resolved successfully", result.to_dict())
    except CompoundPromptError as e:
        return engine_error_response(e)
    except Exception as e:
        return server_error_response(f"Failed to resolve prompt {prompt_id}", e)


async def bulk_resolve_prompts(request: Request) -> Response:
    """
    Resolve many prompts at once.

    Body is either ``{"prompt_ids": [...]}`` or ``{"limit": n, "offset": m}``
    to resolve one page of stored prompts.
    """
    data, error_response = await read_json_object(request)
    if error_response is not None:
        return error_response

    storage = get_storage(request)
    config: EngineConfig = request.app["config"]

    try:
        if "prompt_ids" in data:
            prompt_ids = data["prompt_ids"]
            if not isinstance(prompt_ids, list) or not all(isinstance(i, str) for i in prompt_ids):
                return create_error_response("Invalid prompt ids", ["Field 'prompt_ids' must be a list of strings"])
        else:
            limit = data.get("limit", 50)
            offset = data.get("offset", 0)
            if not isinstance(limit, int) or not isinstance(offset, int) or limit < 1 or offset < 0:
                return create_error_response("Invalid pagination", ["'limit' must be >= 1 and 'offset' >= 0"])
            prompt_ids = storage.list_prompt_ids(limit=min(limit, MAX_BULK_IDS), offset=offset)

        if len(prompt_ids) > MAX_BULK_IDS:
            return create_error_response(
                "Too many prompt ids",
                [f"At most {MAX_BULK_IDS} prompts can be resolved per request"]
            )

        with storage.session_scope() as session:
            result = bulk_resolve(
                prompt_ids, storage.batch_fetcher(session), max_workers=config.bulk_max_workers
            )
        return create_success_response(
            f"Resolved {result.success_count} of {result.success_count + result.error_count} prompts",
            result.to_dict()
        )
    except Exception as e:
        return server_error_response("Failed to bulk resolve prompts", e)


async def preview_prompt(request: Request) -> Response:
    """Preview how an unsaved component list resolves"""
    data, error_response = await read_json_object(request)
    if error_response is not None:
        return error_response

    storage = get_storage(request)

    try:
        components = parse_components(data.get("components"))
        with storage.session_scope() as session:
            text = preview_components(components, storage.fetcher(session))
        return create_success_response("Preview generated successfully", {"resolved_text": text})
    except CompoundPromptError as e:
        return engine_error_response(e)
    except Exception as e:
        return server_error_response("Failed to generate preview", e)


async def validate_component(request: Request) -> Response:
    """Check whether a prompt can be attached as a component"""
    compound_id = request.match_info["id"]
    data, error_response = await read_json_object(request)
    if error_response is not None:
        return error_response

    candidate_id = data.get("component_prompt_id")
    if not isinstance(candidate_id, str) or not candidate_id:
        return create_error_response(
            "Component prompt id is required",
            ["Field 'component_prompt_id' must be a non-empty string"]
        )

    storage = get_storage(request)

    try:
        with storage.session_scope() as session:
            fetch = storage.fetcher(session)
            if fetch(compound_id) is None:
                raise NotFoundError(compound_id)
            validate_new_component(compound_id, candidate_id, fetch)
        return create_success_response("Component is valid", {"valid": True})
    except CompoundPromptError as e:
        return engine_error_response(e)
    except Exception as e:
        return server_error_response("Failed to validate component", e)


async def set_prompt_components(request: Request) -> Response:
    """Replace the component list of a compound prompt"""
    compound_id = request.match_info["id"]
    data, error_response = await read_json_object(request)
    if error_response is not None:
        return error_response

    try:
        components = parse_components(data.get("components"))
        prompt = get_storage(request).set_components(compound_id, components)
        return create_success_response("Components saved successfully", prompt.to_dict())
    except CompoundPromptError as e:
        return engine_error_response(e)
    except Exception as e:
        return server_error_response(f"Failed to save components for {compound_id}", e)


async def get_prompt_dependencies(request: Request) -> Response:
    """Get the prompts a prompt consumes and the compound prompts that reference it"""
    prompt_id = request.match_info["id"]
    storage = get_storage(request)

    try:
        with storage.session_scope() as session:
            dependencies = get_dependencies(prompt_id, storage.fetcher(session))
        referenced_by = storage.find_referencing_prompts(prompt_id)
        return create_success_response("Dependencies retrieved successfully", {
            "dependencies": sorted(dependencies),
            "referenced_by": referenced_by,
        })
    except CompoundPromptError as e:
        return engine_error_response(e)
    except Exception as e:
        return server_error_response(f"Failed to get dependencies for {prompt_id}", e)


async def delete_prompt(request: Request) -> Response:
    """Delete a prompt that no compound prompt references"""
    prompt_id = request.match_info["id"]

    try:
        deleted = get_storage(request).delete_prompt(prompt_id)
        if not deleted:
            return create_error_response("Prompt not found", [f"Prompt not found: {prompt_id}"], status=404)
        return create_success_response("Prompt deleted successfully", {"id": prompt_id})
    except PromptInUseError as e:
        return create_error_response(str(e), e.referenced_by, status=409)
    except Exception as e:
        return server_error_response(f"Failed to delete prompt {prompt_id}", e)


async def export_prompt_library(request: Request) -> Response:
    """Export prompts; ``?ids=a,b`` limits the export to those prompts and their references"""
    raw_ids = request.query.get("ids")
    prompt_ids = [i for i in raw_ids.split(",") if i] if raw_ids else None

    try:
        document = export_prompts(get_storage(request), prompt_ids)
        return create_success_response(f"Exported {document['total_count']} prompts", document)
    except TransferError as e:
        return create_error_response("Export failed", [str(e)], status=404)
    except Exception as e:
        return server_error_response("Failed to export prompts", e)


async def import_prompt_library(request: Request) -> Response:
    """Import an export document; body is ``{"document", "on_duplicate", "dry_run"}``"""
    data, error_response = await read_json_object(request)
    if error_response is not None:
        return error_response

    try:
        result = import_prompts(
            get_storage(request),
            data.get("document"),
            on_duplicate=data.get("on_duplicate", "skip"),
            dry_run=bool(data.get("dry_run", False)),
        )
    except TransferError as e:
        return create_error_response("Import failed", [str(e)])
    except Exception as e:
        return server_error_response("Failed to import prompts", e)

    if not result.success:
        return create_error_response("Import failed", result.errors, data=result.to_dict())
    return create_success_response(
        f"Imported {result.imported} of {result.total} prompts",
        result.to_dict()
    )


def setup_api_routes(app: web.Application, prefix: str = "/compound_prompts") -> None:
    """Register the API routes on ``app`` under ``prefix``"""
    routes = web.RouteTableDef()

    routes.post(f"{prefix}/prompts")(create_prompt)
    routes.get(f"{prefix}/prompts/{{id}}/resolved")(get_resolved_prompt)
    routes.get(f"{prefix}/prompts/{{id}}/dependencies")(get_prompt_dependencies)
    routes.post(f"{prefix}/prompts/{{id}}/components/validate")(validate_component)
    routes.put(f"{prefix}/prompts/{{id}}/components")(set_prompt_components)
    routes.delete(f"{prefix}/prompts/{{id}}")(delete_prompt)

    routes.post(f"{prefix}/resolve/bulk")(bulk_resolve_prompts)
    routes.post(f"{prefix}/preview")(preview_prompt)

    routes.get(f"{prefix}/export")(export_prompt_library)
    routes.post(f"{prefix}/import")(import_prompt_library)

    app.add_routes(routes)


async def _dispose_storage(app: web.Application) -> None:
    app["storage"].engine.dispose()


def create_app(config: Optional[EngineConfig] = None,
               storage: Optional[PromptStorage] = None) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        config: Engine config; loaded from the config file when omitted
        storage: Storage to serve; created from ``config.database_url`` when omitted
    """
    config = config or load_config()
    storage = storage or create_storage(config.database_url)

    app = web.Application()
    app["config"] = config
    app["storage"] = storage
    setup_api_routes(app, config.api_prefix)
    app.on_cleanup.append(_dispose_storage)

    logger.info(f"Compound prompts API mounted at {config.api_prefix}")
    return app
