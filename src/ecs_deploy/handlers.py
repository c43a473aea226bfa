"""Lambda entry point for ECS state change and lifecycle notifications."""
import json
import logging
from dataclasses import asdict, is_dataclass
from functools import lru_cache

from .config.settings import get_settings
from .controller import Controller
from .errors import ControllerError, InvalidEvent, NotFound

logger = logging.getLogger(__name__)


@lru_cache()
def get_controller() -> Controller:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    return Controller.from_settings(settings)


def _response(status_code: int, body) -> dict:
    return {'statusCode': status_code, 'body': json.dumps(body, default=str)}


def lambda_handler(event, context, controller: Controller = None):
    """Process one SNS-wrapped or raw EventBridge event"""
    controller = controller or get_controller()
    try:
        result = controller.process_event(event)
    except InvalidEvent as e:
        logger.warning(f"Rejected event: {str(e)}")
        return _response(400, {'error': str(e)})
    except NotFound as e:
        logger.error(f"Event references a missing resource: {str(e)}")
        return _response(404, {'error': str(e)})
    except ControllerError as e:
        logger.error(f"Error processing event: {str(e)}")
        return _response(500, {'error': str(e)})

    if is_dataclass(result):
        body = asdict(result)
    else:
        body = {'cluster_name': result}
    return _response(200, body)
