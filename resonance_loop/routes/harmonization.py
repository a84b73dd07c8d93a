import logging
from flask import Blueprint, jsonify, request, current_app
from resonance_loop.utils.auth import require_api_key

logger = logging.getLogger(__name__)

harmonization_bp = Blueprint('harmonization', __name__, url_prefix='/api')


@harmonization_bp.route('/harmonize', methods=['POST'])
@require_api_key
def run_cycle():
    data = request.get_json(force=True, silent=True) or {}
    user_id = data.get('user_id')
    if not user_id:
        return jsonify({'error': 'user_id required'}), 400
    force = data.get('force', False)
    if not isinstance(force, bool):
        return jsonify({'error': 'force must be a boolean'}), 400

    service = current_app.config['RESONANCE_SERVICE']
    report = service.run_harmonization_cycle(user_id, force=force)
    if report['status'] == 'not_due':
        report['message'] = 'Harmonization not needed yet'
    return jsonify(report), 200


@harmonization_bp.route('/harmonize/<user_id>/status', methods=['GET'])
@require_api_key
def status(user_id):
    service = current_app.config['RESONANCE_SERVICE']
    return jsonify(service.harmonization_status(user_id)), 200
