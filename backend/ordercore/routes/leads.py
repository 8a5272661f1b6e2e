# Overview: Flask API routes for the sales pipeline; parses input and returns JSON responses.

"""
Lead Routes

All mutating routes require X-Actor-Id.

POST /api/leads                          create a lead
POST /api/leads/<id>/status              {status, follow_up_at?, notes?}
POST /api/leads/<id>/restore             {override_reason}
POST /api/leads/<id>/convert             convert into an order
"""

from flask import Blueprint, g, jsonify

from .. import operations
from ..decorators import json_body, require_actor, respond
from ..services import lead_service

leads_bp = Blueprint("leads", __name__, url_prefix="/api/leads")


@leads_bp.post("")
@require_actor
def create_lead_route():
    data = json_body()
    if not data.get("customer"):
        return jsonify({"error": "customer is required"}), 400

    fields = {key: data[key] for key in ("fulfillment_type", "assigned_to", "follow_up_at", "notes") if key in data}
    result = operations.create_lead(
        customer=data["customer"], items=data.get("items") or [], actor_id=g.actor_id, **fields,
    )
    return respond(result, 201)


@leads_bp.get("/<int:lead_id>")
def get_lead_route(lead_id: int):
    return respond(operations.execute(lambda: lead_service.get_lead(lead_id), name="get_lead"))


@leads_bp.post("/<int:lead_id>/status")
@require_actor
def change_lead_status_route(lead_id: int):
    data = json_body()
    if not data.get("status"):
        return jsonify({"error": "status is required"}), 400
    return respond(operations.change_lead_status(
        lead_id, data["status"], actor_id=g.actor_id,
        follow_up_at=data.get("follow_up_at"), notes=data.get("notes"),
    ))


@leads_bp.post("/<int:lead_id>/restore")
@require_actor
def restore_lead_route(lead_id: int):
    data = json_body()
    if not data.get("override_reason"):
        return jsonify({"error": "override_reason is required"}), 400
    return respond(operations.restore_lead(lead_id, actor_id=g.actor_id, override_reason=data["override_reason"]))


@leads_bp.post("/<int:lead_id>/convert")
@require_actor
def convert_lead_route(lead_id: int):
    return respond(operations.convert_lead(lead_id, actor_id=g.actor_id), 201)
