"""
Core package for the Graph-RAG application.

Ingests a local document tree into a Neo4j knowledge graph (entities,
relations and chunk embeddings) and answers questions by combining
vector search with graph-neighbourhood expansion. Works with a local
OpenAI-compatible endpoint (vLLM + bge-m3) or with the OpenAI API.
"""
