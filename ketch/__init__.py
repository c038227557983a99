import os
from dotenv import find_dotenv, load_dotenv

# Settings are read from the environment at import time, local .env files
# (KETCH_ENV_FILE, default .env) must be loaded first.
_env_file = find_dotenv(filename=os.environ.get("KETCH_ENV_FILE", ".env"), usecwd=True)
if _env_file:
    load_dotenv(dotenv_path=_env_file)

__version__ = "0.1.0"
