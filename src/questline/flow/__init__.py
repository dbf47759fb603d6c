"""Schedule-session flow, web form handling and the title/description rewriter."""
