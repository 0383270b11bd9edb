"""RagMem MCP Tool Schemas -- 21 tools across databases, documents, graph and retrieval."""

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

_RELATION = {
    "type": "object",
    "properties": {
        "from": {"type": "string", "description": "Source entity name"},
        "to": {"type": "string", "description": "Target entity name"},
        "relationType": {"type": "string", "description": "Relationship type (IS_A, HAS, USES, etc.)"},
    },
    "required": ["from", "to", "relationType"],
}

_NO_ARGS = {"type": "object", "properties": {}}

TOOL_SCHEMAS = [
    # -- Databases ----------------------------------------------------------
    {
        "name": "listDatabases",
        "description": "List the logical databases available on the server (template and system databases excluded). Use before switchDatabase to discover isolated memory contexts.",
        "inputSchema": _NO_ARGS,
    },
    {
        "name": "getCurrentDatabase",
        "description": "Get the name of the currently active database.",
        "inputSchema": _NO_ARGS,
    },
    {
        "name": "switchDatabase",
        "description": "Switch the active database. Closes the current connection, opens the named database and runs its pending migrations. On failure the previous database stays active.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "databaseName": {"type": "string", "description": "Name of the database to switch to"},
            },
            "required": ["databaseName"],
        },
    },
    # -- Documents ----------------------------------------------------------
    {
        "name": "storeDocument",
        "description": "Store a document with automatic chunking and vector embedding. Re-storing an id replaces the previous version. Workflow: storeDocument -> extractTerms -> createEntities -> linkEntitiesToDocument.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "Unique document ID"},
                "content": {"type": "string", "description": "Full document text"},
                "metadata": {"type": "object", "description": "Optional metadata"},
                "maxTokens": {"type": "integer", "description": "Max tokens per chunk (default: 200)", "minimum": 1},
                "overlap": {"type": "integer", "description": "Overlap tokens between chunks (default: 20)", "minimum": 0},
            },
            "required": ["id", "content"],
        },
    },
    {
        "name": "extractTerms",
        "description": "Extract candidate entity terms from a stored document using lexical patterns (capitalized phrases, acronyms, identifiers, custom regexes). Read-only.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "documentId": {"type": "string", "description": "ID of a stored document"},
                "minLength": {"type": "integer", "description": "Minimum term length (default: 3)", "minimum": 1},
                "includeCapitalized": {"type": "boolean", "description": "Match capitalized multi-word phrases (default: true)"},
                "includeTechnical": {"type": "boolean", "description": "Match acronyms and camelCase identifiers (default: true)"},
                "customPatterns": {**_STRING_LIST, "description": "Extra regular expressions to match"},
            },
            "required": ["documentId"],
        },
    },
    {
        "name": "linkEntitiesToDocument",
        "description": "Link existing entities to every chunk of a document for graph-enhanced retrieval. Fails if the document or any entity does not exist. Idempotent.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "documentId": {"type": "string", "description": "Document ID"},
                "entityNames": {**_STRING_LIST, "description": "Entity names to link"},
            },
            "required": ["documentId", "entityNames"],
        },
    },
    {
        "name": "deleteDocuments",
        "description": "Delete documents with all their chunks, embeddings and entity links.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "documentIds": {**_STRING_LIST, "description": "Document IDs to delete"},
            },
            "required": ["documentIds"],
        },
    },
    {
        "name": "listDocuments",
        "description": "List stored documents with chunk counts and optional metadata.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "includeMetadata": {"type": "boolean", "description": "Include document metadata (default: true)"},
            },
        },
    },
    {
        "name": "reEmbedEverything",
        "description": "Regenerate vector embeddings for all entities and chunks with the current model. Runs in committed batches.",
        "inputSchema": _NO_ARGS,
    },
    # -- Knowledge graph ----------------------------------------------------
    {
        "name": "createEntities",
        "description": "Create entities with observations and embeddings. Names that already exist are skipped; only new entities are returned. Search first to avoid near-duplicates.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entities": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string", "description": "Unique entity name"},
                            "entityType": {"type": "string", "description": "Category (PERSON, CONCEPT, TECHNOLOGY, etc.)"},
                            "observations": {**_STRING_LIST, "description": "Facts about the entity"},
                        },
                        "required": ["name", "entityType"],
                    },
                },
            },
            "required": ["entities"],
        },
    },
    {
        "name": "createRelations",
        "description": "Create directed relations between entities. Missing endpoints are created automatically; duplicate relations are ignored.",
        "inputSchema": {
            "type": "object",
            "properties": {"relations": {"type": "array", "items": _RELATION}},
            "required": ["relations"],
        },
    },
    {
        "name": "addObservations",
        "description": "Append observations to existing entities. Each item succeeds or fails on its own.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "observations": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "entityName": {"type": "string", "description": "Name of an existing entity"},
                            "contents": {**_STRING_LIST, "description": "New observations"},
                        },
                        "required": ["entityName", "contents"],
                    },
                },
            },
            "required": ["observations"],
        },
    },
    {
        "name": "deleteEntities",
        "description": "Delete entities together with their relations and document links.",
        "inputSchema": {
            "type": "object",
            "properties": {"entityNames": {**_STRING_LIST, "description": "Entity names to delete"}},
            "required": ["entityNames"],
        },
    },
    {
        "name": "deleteRelations",
        "description": "Delete specific relations (exact from, to and relationType).",
        "inputSchema": {
            "type": "object",
            "properties": {"relations": {"type": "array", "items": _RELATION}},
            "required": ["relations"],
        },
    },
    {
        "name": "deleteObservations",
        "description": "Delete specific observations from entities. Must match the exact text.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "deletions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "entityName": {"type": "string"},
                            "observations": {**_STRING_LIST, "description": "Exact observation texts to delete"},
                        },
                        "required": ["entityName", "observations"],
                    },
                },
            },
            "required": ["deletions"],
        },
    },
    # -- Retrieval ----------------------------------------------------------
    {
        "name": "searchNodes",
        "description": "Semantic vector search over entities and/or document chunks. Use before createEntities to check for duplicates.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Natural language query"},
                "nodeTypesToSearch": {
                    "type": "array",
                    "items": {"type": "string", "enum": ["entity", "documentChunk"]},
                    "description": "Types to search (default: both)",
                },
                "limit": {"type": "integer", "default": 10, "minimum": 1},
            },
            "required": ["query"],
        },
    },
    {
        "name": "openNodes",
        "description": "Retrieve specific entities with their observations and incoming and outgoing relations.",
        "inputSchema": {
            "type": "object",
            "properties": {"names": {**_STRING_LIST, "description": "Entity names"}},
            "required": ["names"],
        },
    },
    {
        "name": "readGraph",
        "description": "Dump every entity and relation. Can be large; prefer searchNodes or openNodes for targeted lookups.",
        "inputSchema": _NO_ARGS,
    },
    {
        "name": "hybridSearch",
        "description": "Best for retrieval: vector similarity over entities and chunks, expanded one hop through the knowledge graph, ranked by relevance.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Natural language query"},
                "limit": {"type": "integer", "default": 10, "minimum": 1},
                "useGraph": {"type": "boolean", "description": "Expand through relations (default: true)"},
                "includeDocuments": {"type": "boolean", "description": "Include document chunks (default: true)"},
                "includeEntities": {"type": "boolean", "description": "Include entities (default: true)"},
            },
            "required": ["query"],
        },
    },
    {
        "name": "getDetailedContext",
        "description": "Get a chunk with its neighbouring chunks for full passage context. Use after hybridSearch.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "chunkId": {"type": "string", "description": "Chunk ID from search results"},
                "surroundingChunks": {"type": "integer", "description": "Chunks on each side (default: 2)", "minimum": 0},
            },
            "required": ["chunkId"],
        },
    },
    {
        "name": "getKnowledgeGraphStats",
        "description": "Counts of entities, relations, documents, chunks and links, entity types, active database and embedding model. Call first to see what the knowledge base holds.",
        "inputSchema": _NO_ARGS,
    },
]
