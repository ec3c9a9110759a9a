import logging

from flask import Flask, current_app, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import BadRequest

from tracking_api.config import Config
from tracking_api.stats import MISSING, compute_stats
from tracking_api.storage import (
    VisitorStore,
    VisitorStoreError,
    generate_visitor_id,
    loads,
    server_timestamp,
)

BANNER = """
╔════════════════════════════════════════════╗
║   Tracking Server Running                  ║
╠════════════════════════════════════════════╣
║   Port: {port:<35}║
║   Endpoints:                               ║
║   - POST /api/track    (Track visitor)     ║
║   - GET  /api/visitors (Get all visitors)  ║
║   - GET  /api/stats    (Get statistics)    ║
║   - GET  /api/health   (Health check)      ║
╚════════════════════════════════════════════╝
"""


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config is not None:
        app.config.from_mapping(test_config)

    # Keep visitor fields in the order they were sent
    app.json.sort_keys = False

    CORS(app)

    # Ensure the data directory and visitor file exist on startup
    store = VisitorStore(app.config['VISITOR_DATA_FILE'])
    store.ensure_initialized()
    app.extensions['visitor_store'] = store

    register_routes(app)
    register_error_handlers(app)
    return app


def get_store():
    return current_app.extensions['visitor_store']


def failure(message, status):
    return jsonify({'success': False, 'message': message}), status


class InvalidVisitorBody(BadRequest):
    description = 'Invalid JSON body'


def read_visitor_body():
    """Parse the request body as a JSON object; an empty body counts as {}.

    The body is parsed whatever its Content-Type. NaN and Infinity are
    rejected, and numbers too large for a double are stored as null.
    """
    raw = request.get_data(cache=True)
    if not raw:
        return {}
    try:
        data = loads(raw)
    except ValueError as e:
        raise InvalidVisitorBody() from e
    if not isinstance(data, dict):
        raise InvalidVisitorBody()
    return data


def register_routes(app):

    @app.route('/api/track', methods=['POST'])
    def track_visitor():
        visitor = read_visitor_body()
        visitor['id'] = generate_visitor_id()
        visitor['serverTimestamp'] = server_timestamp()

        try:
            get_store().append(visitor)
        except VisitorStoreError:
            current_app.logger.exception('Error tracking visitor')
            return failure('Error tracking visitor', 500)

        current_app.logger.info(
            'New visitor tracked: id=%s ip=%s device=%s browser=%s location=%s, %s',
            visitor['id'],
            visitor.get('ip', MISSING),
            visitor.get('deviceType', MISSING),
            visitor.get('browser', MISSING),
            visitor.get('city', MISSING),
            visitor.get('country', MISSING),
        )

        return jsonify({
            'success': True,
            'message': 'Visitor tracked successfully',
            'visitorId': visitor['id'],
        })

    @app.route('/api/visitors', methods=['GET'])
    def list_visitors():
        try:
            visitors = get_store().read_all()
        except VisitorStoreError:
            current_app.logger.exception('Error reading visitors')
            return failure('Error reading visitors', 500)

        return jsonify({
            'success': True,
            'count': len(visitors),
            'visitors': visitors,
        })

    @app.route('/api/stats', methods=['GET'])
    def visitor_stats():
        try:
            visitors = get_store().read_all()
        except VisitorStoreError:
            current_app.logger.exception('Error calculating stats')
            return failure('Error calculating statistics', 500)

        return jsonify({'success': True, 'stats': compute_stats(visitors)})

    @app.route('/api/health', methods=['GET'])
    def health_check():
        return jsonify({
            'success': True,
            'message': 'Server is running',
            'timestamp': server_timestamp(),
        })


def register_error_handlers(app):

    @app.errorhandler(400)
    def bad_request(error):
        if isinstance(error, InvalidVisitorBody):
            current_app.logger.warning('Rejected visitor body: %s', error.__cause__)
            return failure(error.description, 400)
        return failure('Bad request', 400)

    @app.errorhandler(404)
    def not_found(error):
        return failure('Not found', 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return failure('Method not allowed', 405)

    @app.errorhandler(500)
    def internal_error(error):
        return failure('Internal server error', 500)


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    app = create_app()
    print(BANNER.format(port=app.config['PORT']))
    app.run(host=app.config['HOST'], port=app.config['PORT'], threaded=True)


if __name__ == '__main__':
    main()
