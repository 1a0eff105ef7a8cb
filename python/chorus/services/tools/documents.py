"""Document tools: createDocument, updateDocument, readDocument.

createDocument and updateDocument drive a nested artifact stream. The
chunks they write around it, all transient:

    createDocument: data-kind, data-id, data-messageId, data-title,
                    data-clear, <deltas>, data-finish
    updateDocument: data-artifactInfo, data-clear, <deltas>, data-finish

Versions are stored only for authenticated callers; anonymous callers see
the streamed document but nothing is persisted.
"""

from typing import Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from chorus.errors import ApiErrorCode
from chorus.logging import get_logger
from chorus.services.artifacts import ARTIFACT_HANDLERS
from chorus.services.chats import get_document_by_id, save_document
from chorus.services.llm.types import Turn
from chorus.services.tools.registry import Tool, ToolContext

logger = get_logger(__name__)

DocumentKind = Literal["text", "code", "sheet"]


def _conversation_context(turns: list[Turn]) -> str:
    return "\n".join(f"{t.role}: {t.text}" for t in turns if t.role != "system" and t.text)


def _creation_prompt(title: str, description: str, turns: list[Turn]) -> str:
    prompt = f"Title: {title}\nDescription: {description}"
    context = _conversation_context(turns)
    if context:
        prompt += f"\n\nConversation Context:\n{context}"
    return prompt


async def _store_version(
    ctx: ToolContext, *, document_id: UUID, kind: str, title: str, content: str
) -> None:
    if ctx.user_id is None:
        return

    def _save() -> None:
        db = ctx.session_factory()
        try:
            save_document(
                db,
                document_id=document_id,
                kind=kind,
                title=title,
                content=content,
                user_id=ctx.user_id,
                message_id=ctx.message_id,
            )
        finally:
            db.close()

    await run_in_threadpool(_save)


async def _load_document(ctx: ToolContext, document_id: UUID):
    def _load():
        db = ctx.session_factory()
        try:
            document = get_document_by_id(db, document_id)
            if document is not None:
                db.expunge(document)
            return document
        finally:
            db.close()

    return await run_in_threadpool(_load)


def _document_not_found() -> dict:
    return {
        "success": False,
        "error": "Document not found",
        "code": ApiErrorCode.E_DOCUMENT_NOT_FOUND.value,
    }


async def create_document(
    ctx: ToolContext, *, title: str, kind: str, prompt: str
) -> tuple[UUID, str]:
    """Stream and store a new document; returns (document id, content).

    Shared by createDocument and research reports.
    """
    handler = ARTIFACT_HANDLERS[kind]
    document_id = uuid4()
    writer = ctx.writer

    await writer.write_data("kind", kind, transient=True)
    await writer.write_data("id", str(document_id), transient=True)
    await writer.write_data("messageId", ctx.message_id_str, transient=True)
    await writer.write_data("title", title, transient=True)
    await writer.write_data("clear", None, transient=True)

    content = await handler.generate(ctx, prompt)
    await _store_version(ctx, document_id=document_id, kind=kind, title=title, content=content)

    await writer.write_data("finish", None, transient=True)
    logger.info(
        "document_created",
        document_id=str(document_id),
        kind=kind,
        document_chars=len(content),
        stored=ctx.user_id is not None,
    )
    return document_id, content


# =============================================================================
# Tools
# =============================================================================


class CreateDocumentInput(BaseModel):
    title: str = Field(
        description="Document title. For code, include the file extension, e.g. script.py."
    )
    description: str = Field(description="A detailed description of what the document contains")
    kind: DocumentKind


class CreateDocumentTool(Tool):
    name = "createDocument"
    description = (
        "Create a persistent document (text, code, or spreadsheet) shown beside the chat. "
        "Use for substantial content, code, spreadsheets and deliverables the user will "
        "reuse. Do not use for conversational answers."
    )
    input_model = CreateDocumentInput

    async def execute(self, args: CreateDocumentInput, ctx: ToolContext) -> dict:
        prompt = _creation_prompt(args.title, args.description, ctx.conversation)
        document_id, _ = await create_document(
            ctx, title=args.title, kind=args.kind, prompt=prompt
        )
        return {
            "id": str(document_id),
            "title": args.title,
            "kind": args.kind,
            "content": "The document has been created successfully.",
        }


class UpdateDocumentInput(BaseModel):
    id: UUID = Field(description="The id of the document to update")
    description: str = Field(description="The description of changes to make")


class UpdateDocumentTool(Tool):
    name = "updateDocument"
    description = (
        "Rewrite an existing document according to a description of the changes. "
        "Use the id returned by createDocument."
    )
    input_model = UpdateDocumentInput

    async def execute(self, args: UpdateDocumentInput, ctx: ToolContext) -> dict:
        document = await _load_document(ctx, args.id)
        if document is None:
            return _document_not_found()

        writer = ctx.writer
        await writer.write_data(
            "artifactInfo",
            {
                "id": str(args.id),
                "title": document.title,
                "messageId": ctx.message_id_str,
                "kind": document.kind,
            },
            transient=True,
        )
        await writer.write_data("clear", None, transient=True)

        handler = ARTIFACT_HANDLERS[document.kind]
        content = await handler.update(ctx, document.content, args.description)
        await _store_version(
            ctx, document_id=args.id, kind=document.kind, title=document.title, content=content
        )

        await writer.write_data("finish", None, transient=True)
        logger.info(
            "document_updated",
            document_id=str(args.id),
            kind=document.kind,
            document_chars=len(content),
        )
        return {
            "id": str(args.id),
            "title": document.title,
            "kind": document.kind,
            "content": "The document has been updated successfully.",
            "success": True,
        }


class ReadDocumentInput(BaseModel):
    id: UUID = Field(description="The id of the document to read")


class ReadDocumentTool(Tool):
    name = "readDocument"
    description = "Read the latest version of a document by id."
    input_model = ReadDocumentInput

    async def execute(self, args: ReadDocumentInput, ctx: ToolContext) -> dict:
        document = await _load_document(ctx, args.id)
        if document is None:
            return _document_not_found()
        return {
            "id": str(args.id),
            "title": document.title,
            "kind": document.kind,
            "content": document.content or "",
        }
