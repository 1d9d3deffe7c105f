"""RollSync - Application Factory."""
import logging
import os
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_jwt_extended import JWTManager
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Initialize extensions
db = SQLAlchemy()
migrate = Migrate()
jwt = JWTManager()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["2000 per day", "500 per hour"]
)


def create_app(config_name: str = None, clock=None) -> Flask:
    """Application factory pattern."""
    app = Flask(__name__)

    # Load configuration
    from config import get_config
    config_class = get_config(config_name)
    app.config.from_object(config_class)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    limiter.init_app(app)

    # Configure CORS
    CORS(app, origins=app.config.get('CORS_ORIGINS', ["*"]))

    # Setup logging
    setup_logging(app)

    # Register blueprints
    register_blueprints(app)

    # Register error handlers
    register_error_handlers(app)

    # Setup database
    setup_database(app)

    # Attendance engine
    setup_engine(app, clock)

    # Add CLI commands
    register_commands(app)

    # Add health check
    @app.route('/health')
    def health_check():
        return jsonify({
            'status': 'healthy',
            'service': 'RollSync',
            'version': '1.0.0'
        })

    return app


def register_blueprints(app: Flask) -> None:
    """Register all application blueprints."""
    from rollsync.api.sessions import sessions_bp
    from rollsync.api.attendance import attendance_bp
    from rollsync.api.stream import stream_bp

    app.register_blueprint(sessions_bp, url_prefix='/api/sessions')
    app.register_blueprint(attendance_bp, url_prefix='/api/attendance')
    app.register_blueprint(stream_bp, url_prefix='/api/stream')


def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""
    from rollsync.utils.helpers import handle_error, error_response
    from rollsync.services.errors import AttendanceError
    from werkzeug.exceptions import HTTPException

    @app.errorhandler(AttendanceError)
    def attendance_error(error):
        return error_response(error.message, error.status_code, code=error.code, details=error.details)

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return handle_error(error, 500)

    @app.errorhandler(HTTPException)
    def handle_exception(e):
        return handle_error(e, e.code)

    # JWT error handlers
    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return error_response('Token has expired', 401)

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        return error_response('Invalid token', 401)

    @jwt.unauthorized_loader
    def missing_token_callback(error):
        return error_response('Authorization token required', 401)


def setup_logging(app: Flask) -> None:
    """Setup application logging."""
    level = getattr(logging, app.config.get('LOG_LEVEL', 'INFO'))
    logging.getLogger('rollsync').setLevel(level)

    if not app.debug and not app.testing:
        log_file = app.config.get('LOG_FILE', 'logs/app.log')
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        ))
        file_handler.setLevel(level)
        app.logger.addHandler(file_handler)
        logging.getLogger('rollsync').addHandler(file_handler)

        app.logger.setLevel(level)
        app.logger.info('RollSync startup')


def setup_database(app: Flask) -> None:
    """Setup database connections."""
    with app.app_context():
        # Import all models
        from rollsync.models import AttendanceSessionModel, PresenceEntryModel
        if app.testing or app.config.get('AUTO_CREATE_TABLES'):
            db.create_all()


def setup_engine(app: Flask, clock=None) -> None:
    """Attach the attendance engine to the application."""
    from rollsync.services.attendance_engine import AttendanceEngine
    from rollsync.services.scheduler import utc_now
    from rollsync.services.store import MemoryStore, SqlAlchemyStore

    if app.config.get('ATTENDANCE_STORE') == 'memory':
        store = MemoryStore()
    else:
        store = SqlAlchemyStore(db)

    engine = AttendanceEngine.from_config(app.config, store=store, clock=clock or utc_now)
    if app.config.get('ATTENDANCE_TIMERS_ENABLED', True):
        engine.start_sweeper(app.app_context)
    app.extensions['attendance'] = engine


def register_commands(app: Flask) -> None:
    """Register CLI commands."""
    import click

    @app.cli.command('init-db')
    @click.option('--drop', is_flag=True, help='Drop existing tables')
    def init_db(drop):
        """Initialize the database."""
        if drop:
            db.drop_all()
            click.echo('Dropped all tables.')

        db.create_all()
        click.echo('Created all tables.')

    @app.cli.command('sweep-sessions')
    def sweep_sessions():
        """Archive ended sessions past the retention window."""
        engine = app.extensions['attendance']
        archived = engine.sweep()
        click.echo(f'Archived {len(archived)} sessions.')
