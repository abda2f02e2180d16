# This module handles code context for the agent roles

# +---------------------+
# |   Ingested files    |   (per session, explicit lifecycle)
# |---------------------|
# | Raw content         |
# | SHA-256 checksums   |
# | Token estimate      |
# +---------------------+
#          |
#          v  Chunker (line ranges + overlap tail)
# +---------------------+
# |   Vector memory     |   (chunk embeddings, retrieval order)
# +---------------------+
#          |
#          v  cosine similarity, top-k
# +------------------------------+
# |      Relevant context        |   (assembled per stage)
# |------------------------------|
# | file path, line range        |
# | relevance score, file type   |
# +------------------------------+
#          |
#          v
#   [planner / fixer / reviewer]
