# =================================================================
#   Scout Troop Manager - WSGI Entry Point
#   Used by production WSGI servers (Waitress, Gunicorn, etc.)
#
#   Usage:
#     Windows:  waitress-serve --host=0.0.0.0 --port=5000 wsgi:app
#     Linux:    gunicorn -w 1 -b 0.0.0.0:5000 wsgi:app
#
#   Keep a single worker: the announcement scheduler runs in-process.
# =================================================================

from server import app, initialize

initialize()

if __name__ == '__main__':
    app.run()
