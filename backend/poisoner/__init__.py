from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from poisoner.config import Config

db = SQLAlchemy()
migrate = Migrate()
socketio = SocketIO(async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    allowed_origins = flask_app.config.get('ALLOWED_ORIGINS') or []

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from poisoner.main import main
    flask_app.register_blueprint(main)

    from poisoner.api.records import records
    flask_app.register_blueprint(records, url_prefix='/api')

    # Change feed handlers bind to the initialized socketio instance
    from poisoner.feed_events import register_feed_handlers
    register_feed_handlers(testing=flask_app.config.get('TESTING', False))

    @click.command('db-reset')
    def db_reset_command():
        """Drops and recreates the database."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            print('Database has been reset!')

    @click.command('host-handover')
    @click.option('--name', default=None, help='Identity to promote (defaults to HOST_HANDOVER_NAME).')
    def host_handover_command(name):
        """Makes the operator identity the host of the active game."""
        from poisoner.feed_events import broadcast_change
        from poisoner.services.session.errors import NotFound
        from poisoner.services.session.roster import hand_over_host
        from poisoner.services.session.store import SqlRecordStore

        name = name or flask_app.config['HOST_HANDOVER_NAME']
        with flask_app.app_context():
            try:
                host = hand_over_host(SqlRecordStore(publish=broadcast_change), name=name)
            except NotFound as exc:
                raise click.ClickException(str(exc))
            print(f'{host.name} is now host of game {host.game_id}')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(host_handover_command)

    return flask_app
