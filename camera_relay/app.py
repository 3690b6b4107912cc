# IMPORT STATEMENTS
import os

from .core import RelaySystem
from .web import app, socketio
from .utils import CONFIG_FILE, load_config, save_config, setup_logging

def main():
    # 1. Load config, writing the defaults on first run
    config = load_config()
    if not os.path.exists(CONFIG_FILE):
        print(f"[STARTUP] No {CONFIG_FILE} found - writing default configuration")
        save_config(config)
    setup_logging(config)

    # 2. Validate camera configuration
    if not config.get('cameras'):
        print("[WARNING] No cameras configured - cameras will register on their first upload")

    # 3. Initialize application
    relay_system = RelaySystem(config, socketio, app)
    app.relay_system = relay_system

    # 4. Start background workers
    if not relay_system.start():
        print("[ERROR] Failed to start relay system")
        return

    # 5. Start web server
    server = config.get('server', {})
    host, port = server.get('host', '0.0.0.0'), int(server.get('port', 5000))
    try:
        print(f"[STARTUP] Starting Flask-SocketIO server on {host}:{port}...")
        debug_mode = os.environ.get('FLASK_DEBUG', 'false').lower() in ['true', '1', 't']
        socketio.run(app, host=host, port=port, debug=debug_mode, use_reloader=False,
                     allow_unsafe_werkzeug=True)
    except KeyboardInterrupt:
        print("Shutdown signal received. Cleaning up...")
    finally:
        relay_system.stop()
        print("Cleanup complete. Exiting.")

if __name__ == "__main__":
    main()
