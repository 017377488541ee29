import os

import pos_config
from pos_server import app, init_services
from sync_worker import recover_queue, start_background


def start_sync_services():
    # Flask's reloader runs this module twice; only the serving child gets the threads
    if pos_config.FLASK_DEBUG and os.environ.get('WERKZEUG_RUN_MAIN') != 'true':
        return None
    recover_queue(pos_config.POS_DB_PATH)
    sync = init_services(db_path=pos_config.POS_DB_PATH)
    return start_background(sync, sync.status, sync.client)


if __name__ == '__main__':
    pos_config.configure_logging('pos')
    stop = start_sync_services()
    try:
        app.run(host=pos_config.HOST, port=pos_config.PORT, debug=pos_config.FLASK_DEBUG)
    finally:
        if stop:
            stop.set()
