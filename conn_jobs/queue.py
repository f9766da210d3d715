"""Amazon SQS adapter providing at-least-once delivery with backoff."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from conn_jobs.retry import calculate_backoff_with_jitter

# SQS limits
MAX_VISIBILITY_TIMEOUT = 43200
MAX_RECEIVE_BATCH = 10
MAX_WAIT_SECONDS = 20


class QueueMessage(BaseModel):
    """Body of one queued operation request."""

    operation_type: str
    job_id: str
    connection_id: str
    params: Dict[str, Any] = Field(default_factory=dict)
    max_attempts: int = 5
    backoff_policy: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "exponential", "base_seconds": 10}
    )


@dataclass
class Delivery:
    """One received message. attempt is 1 on the first delivery."""

    message: Optional[QueueMessage]
    receipt_handle: str
    message_id: str
    attempt: int
    raw_body: str = ""


class SqsDurableQueue:
    """
    Durable queue over a single SQS queue.

    Attempts are counted by SQS itself (``ApproximateReceiveCount``). A retry
    leaves the message in the queue and sets its visibility timeout to the
    backoff delay, so the broker re-delivers it to exactly one worker later.
    Exhausted or undecodable messages are copied to the dead-letter queue and
    deleted.

    boto3 is blocking, so each call runs in a worker thread.
    """

    def __init__(
        self,
        sqs_client: Any,
        queue_url: str,
        dead_letter_queue_url: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.sqs = sqs_client
        self.queue_url = queue_url
        self.dead_letter_queue_url = dead_letter_queue_url
        self.logger = logger or logging.getLogger(__name__)

    async def _call(self, method: str, **kwargs) -> Dict[str, Any]:
        return await asyncio.to_thread(getattr(self.sqs, method), **kwargs)

    async def enqueue(
        self,
        operation_type: str,
        payload: Dict[str, Any],
        *,
        max_attempts: int = 5,
        backoff_policy: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Send an operation request.

        Args:
            operation_type: Job type name
            payload: Must contain job_id and connection_id; may contain params
            max_attempts: Deliveries allowed before dead-lettering
            backoff_policy: Retry backoff policy

        Returns:
            The SQS message id
        """
        message = QueueMessage(
            operation_type=operation_type,
            job_id=str(payload["job_id"]),
            connection_id=payload["connection_id"],
            params=payload.get("params") or {},
            max_attempts=max_attempts,
            backoff_policy=backoff_policy or {"type": "exponential", "base_seconds": 10},
        )
        response = await self._call(
            "send_message",
            QueueUrl=self.queue_url,
            MessageBody=message.model_dump_json(),
            MessageAttributes={
                "operation_type": {"DataType": "String", "StringValue": operation_type}
            },
        )
        self.logger.debug(
            f"Enqueued {operation_type} for job {message.job_id} ({response['MessageId']})"
        )
        return response["MessageId"]

    async def receive(
        self,
        max_messages: int = 10,
        wait_time_seconds: int = 20,
    ) -> List[Delivery]:
        """Long poll for deliveries. Undecodable messages are dead-lettered."""
        response = await self._call(
            "receive_message",
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=min(max_messages, MAX_RECEIVE_BATCH),
            WaitTimeSeconds=min(wait_time_seconds, MAX_WAIT_SECONDS),
            AttributeNames=["All"],
            MessageAttributeNames=["All"],
        )

        deliveries = []
        for raw in response.get("Messages", []):
            attempt = int(raw.get("Attributes", {}).get("ApproximateReceiveCount", "1"))
            body = raw.get("Body", "")
            try:
                message = QueueMessage.model_validate_json(body)
            except ValidationError as e:
                self.logger.error(f"Malformed message {raw['MessageId']}: {e}")
                await self.dead_letter(
                    Delivery(None, raw["ReceiptHandle"], raw["MessageId"], attempt, body),
                    f"malformed message: {e}",
                )
                continue
            deliveries.append(
                Delivery(message, raw["ReceiptHandle"], raw["MessageId"], attempt, body)
            )
        return deliveries

    def has_attempts_left(self, delivery: Delivery) -> bool:
        if delivery.message is None:
            return False
        return delivery.attempt < delivery.message.max_attempts

    async def ack(self, delivery: Delivery) -> None:
        """Delete a message that needs no further delivery."""
        await self._call(
            "delete_message",
            QueueUrl=self.queue_url,
            ReceiptHandle=delivery.receipt_handle,
        )

    async def retry_later(self, delivery: Delivery) -> int:
        """Make the message visible again after the backoff delay."""
        policy = delivery.message.backoff_policy if delivery.message else {}
        delay = min(
            calculate_backoff_with_jitter(policy, delivery.attempt),
            MAX_VISIBILITY_TIMEOUT,
        )
        await self._call(
            "change_message_visibility",
            QueueUrl=self.queue_url,
            ReceiptHandle=delivery.receipt_handle,
            VisibilityTimeout=delay,
        )
        return delay

    async def extend(self, delivery: Delivery, seconds: int) -> None:
        """Keep a long-running delivery hidden from other workers."""
        await self._call(
            "change_message_visibility",
            QueueUrl=self.queue_url,
            ReceiptHandle=delivery.receipt_handle,
            VisibilityTimeout=min(seconds, MAX_VISIBILITY_TIMEOUT),
        )

    async def dead_letter(self, delivery: Delivery, error: str) -> None:
        """Move a message to the dead-letter queue (if any) and delete it."""
        if self.dead_letter_queue_url:
            await self._call(
                "send_message",
                QueueUrl=self.dead_letter_queue_url,
                MessageBody=json.dumps(
                    {
                        "body": delivery.raw_body,
                        "message_id": delivery.message_id,
                        "attempts": delivery.attempt,
                        "error": error,
                    }
                ),
            )
        else:
            self.logger.warning(
                f"No dead-letter queue configured, dropping message {delivery.message_id}"
            )
        await self.ack(delivery)
