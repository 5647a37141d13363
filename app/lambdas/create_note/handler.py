# app/lambdas/create_note/handler.py
import asyncio
import base64
import binascii
import json
import logging
import os
import time
import uuid

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))

TABLE_NAME = os.environ.get("TABLE_NAME", "notes")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Credentials": "true",
}

ALLOWED_FIELDS = {"content", "attachment"}


class NoteError(Exception):
    status_code = 500


class MalformedRequest(NoteError):
    status_code = 400


class Unauthenticated(NoteError):
    status_code = 401


class StoreWriteFailure(NoteError):
    status_code = 500


# ---------------------------
# Responses
# ---------------------------
def _response(status_code, body):
    return {
        "statusCode": status_code,
        "headers": dict(CORS_HEADERS),
        "body": json.dumps(body),
    }


def success(body):
    return _response(200, body)


def failure(status_code=500):
    return _response(status_code, {"status": False})


# ---------------------------
# Request helpers
# ---------------------------
def _user_id(event):
    """
    Authenticated subject placed in the request context by API Gateway.
    Lambda authorizer first, then JWT / Cognito authorizers, then IAM auth.
    """
    ctx = event.get("requestContext") or {}
    authorizer = ctx.get("authorizer") or {}

    candidates = (
        (authorizer.get("lambda") or {}).get("principalId"),
        ((authorizer.get("jwt") or {}).get("claims") or {}).get("sub"),
        (authorizer.get("claims") or {}).get("sub"),
        (ctx.get("identity") or {}).get("cognitoIdentityId"),
    )
    for candidate in candidates:
        if candidate:
            return str(candidate)
    raise Unauthenticated("no authenticated subject in request context")


def parse_body(event):
    raw = event.get("body")
    if raw is None:
        raise MalformedRequest("missing_body")

    if event.get("isBase64Encoded"):
        try:
            raw = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedRequest("invalid_base64") from exc

    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedRequest("invalid_utf8") from exc

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedRequest("invalid_json") from exc

    if not isinstance(payload, dict):
        raise MalformedRequest("body_not_object")
    return payload


def validate_payload(payload):
    unknown = set(payload) - ALLOWED_FIELDS
    if unknown:
        raise MalformedRequest("unknown_fields: %s" % ", ".join(sorted(unknown)))

    content = payload.get("content")
    if not isinstance(content, str):
        raise MalformedRequest("content must be a string")

    attachment = payload.get("attachment")
    if attachment is not None and not isinstance(attachment, str):
        raise MalformedRequest("attachment must be a string")

    return content, attachment


def generate_note_id():
    # uuid1 is time-ordered and node-qualified
    return str(uuid.uuid1())


def now_ms():
    return int(time.time() * 1000)


def build_note(user_id, note_id, content, attachment, created_at):
    note = {
        "userId": user_id,
        "noteId": note_id,
        "content": content,
        "createdAt": created_at,
    }
    if attachment is not None:
        note["attachment"] = attachment
    return note


# ---------------------------
# Store
# ---------------------------
class DynamoNotesStore:
    """Single-record insert into the notes table (partition userId, sort noteId)."""

    def __init__(self, table):
        self.table = table

    def _put_item(self, record):
        self.table.put_item(
            Item=record,
            ConditionExpression="attribute_not_exists(noteId)",
        )

    async def put(self, record):
        try:
            await asyncio.to_thread(self._put_item, record)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            raise StoreWriteFailure(code) from exc
        except BotoCoreError as exc:
            raise StoreWriteFailure(type(exc).__name__) from exc


# ---------------------------
# Handler
# ---------------------------
class CreateNoteHandler:
    def __init__(self, store, id_generator=generate_note_id, clock=now_ms):
        self.store = store
        self.id_generator = id_generator
        self.clock = clock

    async def handle(self, event):
        try:
            user_id = _user_id(event)
            content, attachment = validate_payload(parse_body(event))
            note = build_note(
                user_id=user_id,
                note_id=self.id_generator(),
                content=content,
                attachment=attachment,
                created_at=self.clock(),
            )
            await self.store.put(note)
        except StoreWriteFailure as exc:
            logger.error("Failed to store note: %s", exc)
            return failure(exc.status_code)
        except NoteError as exc:
            logger.warning("Rejected request: %s", exc)
            return failure(exc.status_code)

        logger.info("Created note %s for user %s", note["noteId"], note["userId"])
        return success(note)


def _default_handler():
    table = boto3.resource("dynamodb").Table(TABLE_NAME)
    return CreateNoteHandler(store=DynamoNotesStore(table))


handler = _default_handler()


def lambda_handler(event, context):
    ctx = event.get("requestContext") or {}
    logger.info(
        "Create note request: method=%s path=%s request_id=%s",
        (ctx.get("http") or {}).get("method", ctx.get("httpMethod")),
        event.get("rawPath", event.get("path")),
        ctx.get("requestId"),
    )
    return asyncio.run(handler.handle(event))
