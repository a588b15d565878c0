from probehub.core.config import load_settings
from probehub.core.logging_setup import configure_logging
from probehub.factory import create_app

settings = load_settings()
configure_logging(settings.log_level, json_format=settings.log_json)

app = create_app(settings)
