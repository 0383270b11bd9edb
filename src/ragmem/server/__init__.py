"""RagMem MCP server: tool schemas, handlers and the stdio / HTTP transports."""
