from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
from decimal import Decimal
import json
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
socketio = SocketIO(async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    allowed_origins = flask_app.config.get('CORS_ORIGINS') or []

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from battle_quiz.main import main
    flask_app.register_blueprint(main)

    from battle_quiz.api.battle import battle
    flask_app.register_blueprint(battle, url_prefix='/api/battle')

    # Register Socket.IO event handlers
    from battle_quiz.socketio_events import register_socketio_handlers
    register_socketio_handlers()

    from battle_quiz.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        from flask import jsonify
        return jsonify({'error': 'unauthorized', 'message': 'Login required'}), 401

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from battle_quiz.models import User, Quiz, Question
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            # Seed users with some wallet balance to play with
            for u in ['testuser1', 'testuser2', 'testuser3']:
                user = User(username=u, wallet_balance=Decimal('100.00'))
                user.set_password('password')
                db.session.add(user)

            quiz = Quiz(title='General Knowledge Duel', entry_amount=Decimal('10.00'), question_count=5)
            db.session.add(quiz)
            db.session.flush()
            for i in range(quiz.question_count):
                db.session.add(Question(
                    quiz_id=quiz.id,
                    position=i,
                    text=f'Sample question {i + 1}?',
                    options=json.dumps(['A', 'B', 'C', 'D']),
                    correct_index=i % 4,
                    marks=1,
                ))

            db.session.commit()
            print('Database has been reset and seeded!')

    @click.command('sweep')
    def sweep_command():
        """Runs the waiting-pool, abandonment and payout sweeps once."""
        from battle_quiz.services.battle.sweeper import run_sweeps
        with flask_app.app_context():
            summary = run_sweeps()
            print(f"Sweep finished: {summary}")

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(sweep_command)

    from battle_quiz.services.battle.sweeper import start_sweeper
    start_sweeper(flask_app)

    return flask_app
