# app/__init__.py
import logging

from flask import Flask
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

from config import Config, get_version

db = SQLAlchemy()
migrate = Migrate()
login = LoginManager()
login.login_view = 'main.login'

_LOGGER = logging.getLogger(__name__)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    app.config.setdefault('APP_VERSION', get_version())

    logging.basicConfig(
        level=logging.DEBUG if app.debug else logging.INFO,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )

    db.init_app(app)
    migrate.init_app(app, db)
    login.init_app(app)

    from app import routes
    app.register_blueprint(routes.bp)

    if app.config.get('MONITORING_RUNTIME_ENABLED'):
        from app.monitoring.runtime import start_monitoring_runtime
        start_monitoring_runtime(app)

    _LOGGER.info("Monitoring app %s created", app.config['APP_VERSION'])
    return app


from app import models  # noqa: E402,F401
