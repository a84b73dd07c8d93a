"""Selection Routes

Picks a candidate for a user given their current state and optional text signal.
"""

import logging
from flask import Blueprint, jsonify, request, current_app
from resonance_loop.utils.auth import require_api_key

logger = logging.getLogger(__name__)

selection_bp = Blueprint('selection', __name__, url_prefix='/api')


@selection_bp.route('/select', methods=['POST'])
@require_api_key
def select_candidate():
    data = request.get_json(force=True, silent=True) or {}
    user_id = data.get('user_id')
    if not user_id:
        return jsonify({'error': 'user_id required'}), 400

    signal = data.get('signal') or {}
    if not isinstance(signal, dict):
        return jsonify({'error': 'signal must be an object'}), 400

    service = current_app.config['RESONANCE_SERVICE']
    result = service.select_candidate(
        user_id,
        intent_tag=data.get('intent'),
        text_signal=signal.get('text'),
        emotion_hint=signal.get('emotion_hint'),
    )
    return jsonify(result), 200
