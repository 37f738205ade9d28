import logging


class EntityLoggingAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return '[%s] %s' % (self.extra['entity'], msg), kwargs


def get_logger(module_name=None):
    """
    Returns a logger appropriate for use in the konflux-compliance package.
    Modules should request a logger using their __name__
    """

    logger_name = 'konflux_compliance'

    if module_name:
        if module_name == logger_name or module_name.startswith(logger_name + '.'):
            return logging.getLogger(module_name)
        logger_name = '{}.{}'.format(logger_name, module_name)

    return logging.getLogger(logger_name)


def component_logger(logger: logging.Logger, component: str) -> EntityLoggingAdapter:
    """Wrap a logger so every message is prefixed with the component name."""
    return EntityLoggingAdapter(logger, {'entity': component})
