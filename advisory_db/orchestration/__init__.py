# Sync orchestration
