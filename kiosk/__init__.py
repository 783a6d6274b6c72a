"""Library front-desk kiosk: scanner decoding, attendance sessions and the live activity feed."""
