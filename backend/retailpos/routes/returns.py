# Overview: Flask API routes for sale returns; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import PosError
from ..extensions import db
from ..services import return_service
from ..validation import parse_return_lines
from ..decorators import require_actor


returns_bp = Blueprint("returns", __name__, url_prefix="/api/stores/<int:store_id>/sales")
store_returns_bp = Blueprint("store_returns", __name__, url_prefix="/api/stores/<int:store_id>/returns")


@returns_bp.get("/<int:sale_id>/returns/summary")
@require_actor
def returns_summary_route(store_id: int, sale_id: int):
    try:
        return jsonify(return_service.get_returns_summary(sale_id, store_id)), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to get returns summary")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.post("/<int:sale_id>/returns")
@require_actor
def return_items_route(store_id: int, sale_id: int):
    """
    Process a batch of returns.

    Body: {"items": [{sale_item_id, product_id, stock_type, quantity, return_type, notes?}]}

    Lines commit one by one; on failure the error details carry the failing
    line index and how many lines were committed before it.
    """
    try:
        lines = parse_return_lines(request.get_json(silent=True))
        result = return_service.return_items_batch(sale_id, store_id, g.actor_id, lines)
        return jsonify(result), 201
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to process returns")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.get("/<int:sale_id>/returns")
@require_actor
def returned_products_route(store_id: int, sale_id: int):
    try:
        return jsonify({"returns": return_service.get_returned_products(sale_id, store_id)}), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to list returned products")
        return jsonify({"error": "Internal server error"}), 500


@store_returns_bp.get("/defective")
@require_actor
def defective_products_route(store_id: int):
    """Defective returns grouped by product with total units and cost-based loss."""
    try:
        return jsonify({"products": return_service.get_defective_products(store_id)}), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to build defective products report")
        return jsonify({"error": "Internal server error"}), 500
