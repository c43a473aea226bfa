"""Long-polling SQS worker feeding platform events to the controller."""
import logging
import time
from typing import Optional

from botocore.exceptions import ClientError

from .aws.utils import get_sqs_client, platform_error
from .config.settings import Settings, get_settings
from .controller import Controller
from .errors import ControllerError, InvalidEvent

logger = logging.getLogger(__name__)


class EventWorker:
    """Receives notifications from the queue and dispatches them one at a time.

    Processed and unparseable messages are deleted. A message whose
    processing failed stays on the queue and is redelivered after its
    visibility timeout.
    """

    def __init__(self, controller: Controller, sqs_client=None, queue_url: str = None,
                 settings: Settings = None):
        self.settings = settings or get_settings()
        self.controller = controller
        self.sqs = sqs_client or get_sqs_client()
        self.queue_url = queue_url or self.settings.sqs_queue_url
        if not self.queue_url:
            raise ValueError("SQS_QUEUE_URL is not configured")
        logger.info(f"EventWorker initialized")
        logger.info(f"  Queue URL: {self.queue_url}")

    def poll_once(self, max_messages: int = 10) -> int:
        """Receive one batch and return the number of messages handled"""
        try:
            response = self.sqs.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=max_messages,
                WaitTimeSeconds=self.settings.sqs_wait_time_seconds,
            )
        except ClientError as e:
            raise platform_error("Receive messages", e) from e

        handled = 0
        for message in response.get('Messages', []):
            if self.handle_message(message):
                self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=message['ReceiptHandle'])
                handled += 1
        return handled

    def handle_message(self, message: dict) -> bool:
        """Returns whether the message can be deleted"""
        message_id = message.get('MessageId')
        try:
            result = self.controller.process_event(message['Body'])
        except InvalidEvent as e:
            logger.warning(f"Dropping message {message_id}: {str(e)}")
            return True
        except ControllerError as e:
            logger.error(f"Error processing message {message_id}: {str(e)}")
            return False
        logger.info(f"Processed message {message_id}: {result}")
        return True

    def run(self, max_iterations: Optional[int] = None) -> None:
        """Resume in-flight watchers, then poll until interrupted"""
        self.controller.resume()
        iteration = 0
        logger.info("Starting event worker loop")
        while max_iterations is None or iteration < max_iterations:
            iteration += 1
            try:
                self.poll_once()
            except ControllerError as e:
                logger.error(f"Error polling queue: {str(e)}")
                time.sleep(5)
