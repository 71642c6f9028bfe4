import logging
import os

from app import build_engine, make_app
from config import load_config

# Entrypoint
if __name__ == "__main__":
    cfg = load_config(os.environ.get("CONCEPT_SERVER_CONFIG", "config.yaml"))
    logging.basicConfig(
        level=cfg.log_level,
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )
    eng = build_engine(cfg)
    app = make_app(eng, cfg)
    logging.getLogger("concept_server").info(
        "Serving %d concepts and %d syncs on http://%s:%d%s",
        len(eng.registry.concepts()), len(eng.syncs), cfg.host, cfg.port, cfg.base_url,
    )
    app.run(host=cfg.host, port=cfg.port, debug=False, threaded=True)
