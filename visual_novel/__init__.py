"""AI visual novel: conversation engine for chatting with user-authored characters."""
