from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
socketio = SocketIO(async_mode=None)

STORE_EXTENSION = 'articphone.store'


def get_store(flask_app=None):
    """The shared state store bound to ``flask_app`` (default: current app)."""
    from flask import current_app
    flask_app = flask_app or current_app
    return flask_app.extensions[STORE_EXTENSION]


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    allowed_origins = flask_app.config.get('CORS_ORIGINS') or '*'

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Shared state store; every committed change is pushed to the room's sockets
    from articphone.store import StateStore
    from articphone.socketio_events import publish_state_change
    flask_app.extensions[STORE_EXTENSION] = StateStore(flask_app, publisher=publish_state_change)

    # Import and register blueprints here
    from articphone.routes import main
    flask_app.register_blueprint(main)

    from articphone.main import identity
    flask_app.register_blueprint(identity, url_prefix='/api/identity')

    from articphone.api.rooms import rooms
    flask_app.register_blueprint(rooms, url_prefix='/api/rooms')

    from articphone.socketio_events import register_socketio_handlers
    register_socketio_handlers()

    # Flask-Login identity loader
    from articphone.models import Identity

    @login_manager.user_loader
    def load_identity(identity_id):
        return db.session.get(Identity, int(identity_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'not_signed_in', 'message': 'Sign in first'}), 401

    @click.command('db-reset')
    def db_reset_command():
        """Drops and recreates the database tables."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            print('Database has been reset!')

    flask_app.cli.add_command(db_reset_command)

    return flask_app
