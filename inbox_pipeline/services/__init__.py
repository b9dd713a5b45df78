"""External collaborators: mailbox, classifier service and status broadcasting."""
