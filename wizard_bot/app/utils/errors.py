class WizardError(Exception):
    """Error base del puente."""


class MessageNotFoundError(WizardError):
    """No se pudo re-resolver el mensaje original por su identificador estable."""

    def __init__(self, message_id: str):
        super().__init__(f"Mensaje no encontrado: {message_id}")
        self.message_id = message_id


class InvalidTransitionError(WizardError):
    """Señal de transporte que no corresponde a una transición válida."""

    def __init__(self, current, target):
        super().__init__(f"Transición inválida {current.value} → {target.value}")
        self.current = current
        self.target = target
