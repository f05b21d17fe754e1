import os

from app import create_app

app = create_app()
socketio = app.extensions["socketio"]


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    socketio.run(app, host="0.0.0.0", port=port, allow_unsafe_werkzeug=True)
