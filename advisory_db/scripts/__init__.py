# Process entry points
