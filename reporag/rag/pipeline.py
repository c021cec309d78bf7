"""
Retrieval pipeline.

Answers a natural-language query against the most recently completed
ingestion run:

    resolve conversation → latest completed run → embed query
        → top-k content units → persist context → assemble prompt → completion

Building the context and calling the language model are separate steps that
meet only through the persisted context object, so either can be re-run on
its own.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from reporag.database.service import RunRegistry
from reporag.errors import (
    ConversationNotFoundError,
    InvalidQueryError,
    MalformedResponseError,
    ObjectNotFoundError,
    RepoRAGError,
    classify_exception,
)
from reporag.integrations.object_store import ObjectStore
from reporag.rag.embeddings import ContentEmbedder
from reporag.rag.vector_store import ContentUnit, VectorStore

logger = logging.getLogger(__name__)

# Object keys inside a conversation's bucket
CONTEXT_KEY = "related-documentation.json"
HISTORY_KEY = "conversation-history.json"

DOCUMENTATION_HEADER = "Here is the documentation that is relevant to the user's query:"


def system_instructions(project_name: str) -> List[str]:
    """Fixed system instructions, in the order they are sent."""
    return [
        "You are a friendly, helpful software assistant. "
        f"Your goal is to help users understand and work with {project_name}.",
        "You should respond in short paragraphs, using Markdown formatting, "
        "separated with two newlines to keep your responses easily readable.",
    ]


def new_conversation_id() -> str:
    return f"conversation-{uuid.uuid4()}"


@dataclass
class QueryResult:
    """Answer to one query, plus what it was grounded on."""
    conversation_id: str
    answer: str
    run_id: str
    related_documents: List[ContentUnit] = field(default_factory=list)
    context_key: str = CONTEXT_KEY


class RetrievalPipeline:
    """
    Retrieval-augmented answering over the latest completed run.

    Steps run strictly in sequence and nothing is retried internally;
    failures surface as TransientError or PermanentError.
    """

    def __init__(
        self,
        settings,
        registry: RunRegistry,
        vector_store: VectorStore,
        embedder: ContentEmbedder,
        llm: BaseChatModel,
        object_store: ObjectStore,
    ):
        self.settings = settings
        self.registry = registry
        self.vector_store = vector_store
        self.embedder = embedder
        self.llm = llm
        self.object_store = object_store

    def answer_query(self, query: str, conversation_id: Optional[str] = None) -> QueryResult:
        """
        Answer a query.

        Args:
            query: Free-text question
            conversation_id: Existing conversation to continue, or None for a new one

        Returns:
            QueryResult with the conversation id and the answer

        Raises:
            InvalidQueryError: query is blank
            ConversationNotFoundError: unknown conversation id
            NoCompletedRunError: no ingestion run has completed yet
        """
        if not query or not query.strip():
            raise InvalidQueryError("Query must not be empty")

        conversation_id = self.resolve_conversation(conversation_id)
        run_id = self.registry.latest_completed()
        logger.info(f"[{conversation_id}] Answering against {run_id}")

        documents = self.generate_prompt_context(query, conversation_id, run_id)
        answer, messages = self.invoke_prompt(query, conversation_id, CONTEXT_KEY)

        self._append_turn(conversation_id, {
            "query": query,
            "run_id": run_id,
            "related_documents": [
                {"id": doc.id, "source_path": doc.source_path, "distance": doc.distance}
                for doc in documents
            ],
            "prompt": [[_role(message), message.content] for message in messages],
            "answer": answer,
            "created_at": datetime.now(timezone.utc).isoformat(),
        })

        return QueryResult(
            conversation_id=conversation_id,
            answer=answer,
            run_id=run_id,
            related_documents=documents,
        )

    def resolve_conversation(self, conversation_id: Optional[str] = None) -> str:
        """Return an existing conversation id, or create a conversation and its bucket."""
        if conversation_id:
            if not self.object_store.bucket_exists(conversation_id):
                raise ConversationNotFoundError(f"Conversation '{conversation_id}' not found")
            return conversation_id

        conversation_id = new_conversation_id()
        self.object_store.create_bucket(conversation_id)
        logger.info(f"Started conversation {conversation_id}")
        return conversation_id

    def generate_prompt_context(self, query: str, conversation_id: str, run_id: str) -> List[ContentUnit]:
        """
        Retrieve the run's nearest content units and persist them for the prompt step.

        The query is embedded exactly once.
        """
        embedding = self.embedder.embed_query(query)
        documents = self.vector_store.query(run_id, embedding, k=self.settings.retrieval_k)
        logger.info(f"[{conversation_id}] Retrieved {len(documents)} related documents from {run_id}")

        payload = {
            "run_id": run_id,
            "context": [doc.to_dict() for doc in documents],
        }
        self.object_store.put(conversation_id, CONTEXT_KEY, json.dumps(payload).encode("utf-8"))
        return documents

    def build_prompt(self, query: str, documentation: List[str]) -> List[BaseMessage]:
        """Assemble the ordered system instructions, the documentation and the query."""
        messages: List[BaseMessage] = [
            SystemMessage(content=instruction)
            for instruction in system_instructions(self.settings.assistant_project_name)
        ]
        messages.append(SystemMessage(content=f"{DOCUMENTATION_HEADER}\n\n" + "\n\n".join(documentation)))
        messages.append(HumanMessage(content=query))
        return messages

    def invoke_prompt(self, query: str, conversation_id: str, context_key: str = CONTEXT_KEY) -> Tuple[str, List[BaseMessage]]:
        """
        Read the persisted context back, assemble the prompt and call the model.

        Returns:
            Tuple of (answer, prompt messages)
        """
        raw = self.object_store.get(conversation_id, context_key)
        try:
            context = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedResponseError(f"Context object {conversation_id}/{context_key} is not valid JSON") from e

        documentation = [doc["content"] for doc in context.get("context", [])]
        messages = self.build_prompt(query, documentation)

        logger.info(f"[{conversation_id}] Calling LLM with {len(documentation)} documents")
        try:
            response = self.llm.invoke(messages)
        except RepoRAGError:
            raise
        except Exception as e:
            raise classify_exception(e, "completion request") from e

        answer = _response_text(response)
        if not answer.strip():
            raise MalformedResponseError("Completion service returned an empty answer")

        logger.info(f"[{conversation_id}] Response received ({len(answer)} chars)")
        return answer, messages

    def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        """Stored turns of a conversation, oldest first."""
        if not self.object_store.bucket_exists(conversation_id):
            raise ConversationNotFoundError(f"Conversation '{conversation_id}' not found")
        return {"conversation_id": conversation_id, "turns": self._load_turns(conversation_id)}

    def release_conversation(self, conversation_id: str) -> None:
        """Delete a conversation's scratch storage."""
        self.object_store.delete_bucket(conversation_id)
        logger.info(f"Released conversation {conversation_id}")

    def _load_turns(self, conversation_id: str) -> List[Dict[str, Any]]:
        try:
            raw = self.object_store.get(conversation_id, HISTORY_KEY)
        except ObjectNotFoundError:
            return []
        return json.loads(raw.decode("utf-8")).get("turns", [])

    def _append_turn(self, conversation_id: str, turn: Dict[str, Any]):
        turns = self._load_turns(conversation_id)
        turns.append(turn)
        data = {"conversation_id": conversation_id, "turns": turns}
        self.object_store.put(conversation_id, HISTORY_KEY, json.dumps(data).encode("utf-8"))


def _role(message: BaseMessage) -> str:
    return "system" if isinstance(message, SystemMessage) else "human"


def _response_text(response) -> str:
    """First choice's message content; content blocks are joined."""
    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        content = "".join(parts)
    if not isinstance(content, str):
        raise MalformedResponseError(f"Unexpected completion payload: {type(content).__name__}")
    return content
