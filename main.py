import logging
import os

from dotenv import load_dotenv

from url_previewer.matrix_bot import run_bot


if __name__ == '__main__':
    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    run_bot()
