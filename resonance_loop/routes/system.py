import logging
from flask import Blueprint, jsonify, request, current_app
from resonance_loop.utils.auth import require_api_key

logger = logging.getLogger(__name__)

system_bp = Blueprint('system', __name__, url_prefix='/api')


@system_bp.route('/health', methods=['GET'])
def health():
    service = current_app.config['RESONANCE_SERVICE']
    stats = service.state.get_system_stats()
    return jsonify({'ok': True, 'health_score': stats['health_score'], 'analytics': stats['analytics']}), 200


@system_bp.route('/config', methods=['GET'])
@require_api_key
def get_config():
    service = current_app.config['RESONANCE_SERVICE']
    return jsonify(service.state.get_config()), 200


@system_bp.route('/config', methods=['POST'])
@require_api_key
def update_config():
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict) or not data:
        return jsonify({'error': 'configuration object required'}), 400

    service = current_app.config['RESONANCE_SERVICE']
    if not service.state.update_config(data):
        return jsonify({'error': 'invalid configuration'}), 400

    # Embedding settings are read once when the service builds its client
    if any(k.startswith('embedding_') for k in data):
        service.reload_embeddings()
        logger.info(f"Reloaded embedding service: {service.embeddings.method}")
    return jsonify({'ok': True, 'config': service.state.get_config()}), 200
