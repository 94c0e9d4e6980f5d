"""
aide: a tool-authoring conversational agent.

A console assistant on Claude that can call host-side tools, write new tools
for itself at runtime, and answer repeated questions from a semantic cache of
earlier turns.

Layers (bottom to top):
    1. Conversation history and tool registry
    2. Tool executor, tool store and dynamic tool compiler
    3. Safety gate (human approval) and error gate
    4. Claude completion client and the agentic loop
    5. Semantic prompt cache (embeddings + vector store)
    6. Session state machine and console channel
"""

__version__ = "0.1.0"
