"""Face building blocks: detection types, descriptor extraction, pose, quality,
matching and enrollment templates."""
