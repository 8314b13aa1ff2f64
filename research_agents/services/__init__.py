# =============================================================================
# Services Package — Collaborators Used by the Agents
# =============================================================================
#   - llm.py: multi-provider text generation (Anthropic, OpenAI-compatible)
#   - embedder.py: embeddings (OpenAI-compatible text, Voyage multimodal)
#   - vectorstore.py: pluggable vector store protocol (Chroma, pgvector)
#   - memory.py: associative memory store (dedup/enrich, recall, prune)
#   - project_data.py: project items and their stored analyses
#   - web_search.py: Perplexity web search (feature-flagged)
#   - image_utils.py: image compression before vision calls (Pillow)
#   - coordination.py: per-run coordination state and run persistence
# =============================================================================
