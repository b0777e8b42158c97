"""Deterministic OpenAPI spec builder for the transaction API.

Action endpoints are generated from the lifecycle transition table, so the
document cannot drift from the runtime guards:
- ``x-transitions`` on the BorrowTransaction schema lists every status and
  ``x-status-graph`` maps each status to the statuses reachable from it
- each action operation carries ``x-actors`` and ``x-from-statuses``
"""
from typing import Any, Dict, List

from rental_engine.models.transaction import BorrowTransaction
from rental_engine.errors import PAYMENT_ERROR_KINDS
from rental_engine.services.lifecycle import TRANSITIONS, REQUEST
from rental_engine.services.reconciliation import HANDLED_EVENTS

__all__ = ["build_openapi_spec"]

ACTION_SUMMARIES: Dict[str, str] = {
    "confirm-payment": "Verify the authorization hold after client-side confirmation",
    "approve": "Approve request and capture the hold",
    "decline": "Decline request and release the hold",
    "cancel": "Borrower cancels (hold released or payment refunded)",
    "pickup": "Confirm pickup and record condition",
    "return": "Confirm return; degraded condition defers settlement",
    "damage-claim": "Settle with a damage claim against the deposit",
    "late-fee": "Charge newly accrued late days as a separate payment",
    "rate": "Rate the other party; both ratings complete the transaction",
}

ACTION_BODIES: Dict[str, Dict[str, Any]] = {
    "approve": {"response": {"type": "string", "maxLength": 500}},
    "decline": {"reason": {"type": "string", "maxLength": 500}},
    "pickup": {"condition": {"type": "string", "enum": ["like_new", "good", "fair", "worn"]}},
    "return": {
        "condition": {"type": "string", "enum": ["like_new", "good", "fair", "worn"]},
        "notes": {"type": "string", "maxLength": 500},
    },
    "damage-claim": {
        "amount_cents": {"type": "integer", "minimum": 1},
        "notes": {"type": "string", "minLength": 10, "maxLength": 1000},
        "evidence_urls": {"type": "array", "items": {"type": "string"}},
    },
    "rate": {
        "rating": {"type": "integer", "minimum": 1, "maximum": 5},
        "comment": {"type": "string", "maxLength": 500},
    },
}

REQUIRED_FIELDS: Dict[str, List[str]] = {
    "return": ["condition"],
    "damage-claim": ["amount_cents", "notes"],
    "rate": ["rating"],
}


def _caching_headers() -> Dict[str, Any]:
    return {
        "ETag": {"schema": {"type": "string"}},
        "Last-Modified": {"schema": {"type": "string"}},
        "X-Last-Modified-ISO": {"schema": {"type": "string"}},
    }


def _error_responses() -> Dict[str, Any]:
    ref = {"content": {"application/json": {"schema": {"$ref": "#/components/schemas/Error"}}}}
    return {
        "400": {"description": "Validation error", **ref},
        "401": {"description": "Missing or invalid token"},
        "403": {"description": "Caller lacks the role for this action", **ref},
        "404": {"description": "Not found or not in a valid state for this action", **ref},
        "502": {"description": "Payment processing failed", **ref},
    }


def _transaction_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "id": {"type": "string", "format": "uuid"},
            "listing_id": {"type": "integer"},
            "borrower_id": {"type": "integer"},
            "lender_id": {"type": "integer"},
            "status": {"type": "string", "enum": list(BorrowTransaction.ALL_STATUSES)},
            "payment_status": {"type": "string", "enum": list(BorrowTransaction.ALL_PAYMENT_STATUSES)},
            "rental_days": {"type": "integer"},
            "rental_fee_cents": {"type": "integer"},
            "deposit_cents": {"type": "integer"},
            "platform_fee_cents": {"type": "integer"},
            "lender_payout_cents": {"type": "integer"},
            "total_cents": {"type": "integer"},
            "late_fee_amount_cents": {"type": "integer"},
            "damage_claim_amount_cents": {"type": "integer"},
            "updated_at": {"type": "string", "format": "date-time"},
        },
        "required": ["id", "status", "payment_status"],
        "x-transitions": list(BorrowTransaction.ALL_STATUSES),
        "x-status-graph": {s: sorted(targets) for s, targets in sorted(TRANSITIONS.graph.items())},
    }


def _action_operation(action: str) -> Dict[str, Any]:
    rows = [t for t in TRANSITIONS if t.action == action]
    op: Dict[str, Any] = {
        "summary": ACTION_SUMMARIES.get(action, action),
        "parameters": [{"$ref": "#/components/parameters/TxnIdParam"}],
        "responses": {
            "200": {
                "description": "Updated transaction",
                "content": {"application/json": {"schema": {"$ref": "#/components/schemas/BorrowTransaction"}}},
            },
            **_error_responses(),
        },
        "x-actors": sorted(TRANSITIONS.actors(action)),
        "x-from-statuses": [t.source for t in rows],
        "x-to-statuses": sorted({s for t in rows for s in t.targets}),
        "x-payment-calls": sorted({c for t in rows for c in t.payment_calls}),
    }
    if action in ACTION_BODIES:
        op["requestBody"] = {
            "required": action in REQUIRED_FIELDS,
            "content": {"application/json": {"schema": {
                "type": "object",
                "properties": ACTION_BODIES[action],
                "required": REQUIRED_FIELDS.get(action, []),
            }}},
        }
    return op


def build_openapi_spec() -> Dict[str, Any]:
    components: Dict[str, Any] = {
        "schemas": {
            "BorrowTransaction": _transaction_schema(),
            "Pagination": {
                "type": "object",
                "properties": {
                    "total": {"type": "integer"},
                    "limit": {"type": "integer"},
                    "offset": {"type": "integer"},
                    "returned": {"type": "integer"},
                },
                "required": ["total", "limit", "offset", "returned"],
            },
            "Error": {
                "type": "object",
                "properties": {"error": {"type": "object", "properties": {
                    "status": {"type": "integer"},
                    "title": {"type": "string"},
                    "detail": {"type": "string"},
                    "code": {"type": "string", "enum": list(PAYMENT_ERROR_KINDS)},
                }}},
                "required": ["error"],
            },
        },
        "securitySchemes": {"BearerAuth": {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"}},
        "parameters": {
            "TxnIdParam": {"name": "txn_id", "in": "path", "required": True, "schema": {"type": "string"}},
            "LimitParam": {"name": "limit", "in": "query", "schema": {"type": "integer", "default": 20}},
            "OffsetParam": {"name": "offset", "in": "query", "schema": {"type": "integer", "default": 0}},
        },
    }

    paths: Dict[str, Any] = {
        "/transactions": {
            "get": {
                "summary": "List the caller's transactions",
                "parameters": [
                    {"$ref": "#/components/parameters/LimitParam"},
                    {"$ref": "#/components/parameters/OffsetParam"},
                    {"name": "role", "in": "query", "schema": {"type": "string", "enum": ["borrower", "lender"]}},
                    {"name": "status", "in": "query", "schema": {"type": "string", "enum": list(BorrowTransaction.ALL_STATUSES)}},
                ],
                "responses": {"200": {"description": "OK", "headers": _caching_headers()}, "304": {"description": "Not Modified"}},
            },
            "post": {
                "summary": "Request to borrow a listing (places the authorization hold)",
                "requestBody": {"required": True, "content": {"application/json": {"schema": {
                    "type": "object",
                    "properties": {
                        "listing_id": {"type": "integer"},
                        "start_date": {"type": "string", "format": "date-time"},
                        "end_date": {"type": "string", "format": "date-time"},
                        "message": {"type": "string", "maxLength": 500},
                    },
                    "required": ["listing_id", "start_date", "end_date"],
                }}}},
                "responses": {"201": {"description": "Created"}, **_error_responses()},
                "x-actors": sorted(TRANSITIONS.actors(REQUEST)),
                "x-payment-calls": list(TRANSITIONS.resolve(None, REQUEST).payment_calls),
            },
        },
        "/transactions/{txn_id}": {
            "get": {
                "summary": "Transaction detail",
                "parameters": [{"$ref": "#/components/parameters/TxnIdParam"}],
                "responses": {"200": {"description": "OK", "headers": _caching_headers()}, "304": {"description": "Not Modified"}},
            },
        },
        "/transactions/{txn_id}/payment-status": {
            "get": {
                "summary": "Payment summary with live hold status",
                "parameters": [{"$ref": "#/components/parameters/TxnIdParam"}],
                "responses": {"200": {"description": "OK"}},
            },
        },
    }
    for action in TRANSITIONS.actions():
        if action == REQUEST:
            continue
        paths[f"/transactions/{{txn_id}}/{action}"] = {"post": _action_operation(action)}

    paths["/webhooks/stripe"] = {
        "post": {
            "summary": "Processor event receiver; heals payment status from signed events",
            "security": [],
            "tags": ["Webhooks"],
            "parameters": [{"name": "Stripe-Signature", "in": "header", "required": True, "schema": {"type": "string"}}],
            "responses": {"200": {"description": "Event acknowledged"}, "400": {"description": "Bad signature or payload"}, "503": {"description": "Signing secret not configured"}},
            "x-handled-events": sorted(HANDLED_EVENTS),
        },
    }

    for path, ops in paths.items():
        for method, od in ops.items():
            rid = path.strip("/").replace("/", "_").replace("{", "").replace("}", "").replace("-", "_")
            od["operationId"] = f"{method}_{rid}"
            od.setdefault("tags", ["Transactions"])

    return {
        "openapi": "3.0.3",
        "info": {"title": "Rental Transaction API", "version": "0.1.0"},
        "paths": paths,
        "components": components,
        "security": [{"BearerAuth": []}],
        "tags": [{"name": "Transactions", "description": "Borrow transaction lifecycle"}, {"name": "Webhooks", "description": "Processor callbacks"}],
    }
