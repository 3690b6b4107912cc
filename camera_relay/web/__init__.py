from flask import Flask
from flask_socketio import SocketIO

app = Flask(__name__, static_folder=None)
app.relay_system = None
socketio = SocketIO(app, cors_allowed_origins="*", async_mode='threading', logger=False, engineio_logger=False)

# Import handlers to register Socket.IO event handlers
# Must be imported AFTER socketio is created
from . import handlers
from .routes import api_bp

app.register_blueprint(api_bp)
