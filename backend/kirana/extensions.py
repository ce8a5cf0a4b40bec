# Overview: Flask extension instances for database, migrations, and the order event feed.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .services.order_events import OrderEventBroker

db = SQLAlchemy()
migrate = Migrate()
order_events = OrderEventBroker()
