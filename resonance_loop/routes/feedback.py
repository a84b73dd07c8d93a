import logging
from flask import Blueprint, request, jsonify, current_app
from resonance_loop.utils.auth import require_api_key

logger = logging.getLogger(__name__)

feedback_bp = Blueprint('feedback', __name__, url_prefix='/api')


@feedback_bp.route('/feedback', methods=['POST'])
@require_api_key
def submit_feedback():
    data = request.get_json(force=True, silent=True) or {}
    required = ['user_id', 'candidate_id', 'self_report']
    missing = [k for k in required if k not in data]
    if missing:
        return jsonify({'error': f'missing required fields: {", ".join(missing)}'}), 400

    service = current_app.config['RESONANCE_SERVICE']
    result = service.submit_feedback(
        data['user_id'],
        data['candidate_id'],
        data['self_report'],
        behavioral_metrics=data.get('behavioral_metrics'),
        biometric_signals=data.get('biometric_signals'),
    )
    logger.info(f"Feedback stored for {data['user_id']} on {data['candidate_id']}")
    return jsonify(result), 200
