"""Firebase Admin and Firestore client setup."""
