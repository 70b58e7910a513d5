# Services package.
#
# Each module exposes a focused set of functions or collaborators for one
# concern of the content API:
#
#   article_service  — listing projection (read through the cache),
#                      detail, search and CRUD for Article
#   comment_service  — append-only, sanitised comment creation
#   image_service    — upload checks and the image optimisation boundary
#   invalidation     — listing cache invalidation after article writes
#
# Database-facing functions accept an AsyncSession as their first argument
# and never commit; the router layer owns the transaction boundary.
