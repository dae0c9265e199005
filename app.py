"""
WSGI entry point.

    gunicorn --config gunicorn.conf.py "app:application"

Running the module directly starts the Flask development server.
"""

import os

from upface_crm.app import create_wsgi_application

application = create_wsgi_application()

if __name__ == '__main__':
    application.run(
        host=os.getenv('FLASK_HOST', '127.0.0.1'),
        port=int(os.getenv('FLASK_PORT', '8000')),
        debug=application.config.get('DEBUG', False),
    )
