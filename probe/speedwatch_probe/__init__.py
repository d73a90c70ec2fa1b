"""speedwatch probe agent: headless device-side client."""
